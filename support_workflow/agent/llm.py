"""Chat-model access for workflow nodes.

Wraps langchain-openai's ChatOpenAI with per-node overrides, a call-level
timeout and structured output via pydantic schemas.
"""
import asyncio
import json
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Type, TypeVar

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from support_workflow.config import Settings, get_settings
from support_workflow.exceptions import ClassificationFailure
from support_workflow.models import LLMOverride

logger = structlog.get_logger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)
ModelKey = Tuple[Optional[str], Optional[str], str, float]


class LLMClient:
    """Resolves node LLM overrides to chat models and calls them with a timeout."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        model_factory: Optional[Callable[..., BaseChatModel]] = None,
    ):
        """
        Initialize the client.

        Args:
            settings: Application settings (defaults to the global instance)
            model_factory: Builds a chat model from ChatOpenAI keyword arguments
        """
        self.settings = settings or get_settings()
        self.timeout = self.settings.llm_timeout_seconds
        self._factory = model_factory or ChatOpenAI
        self._models: Dict[ModelKey, BaseChatModel] = {}

    def chat_model(self, override: Optional[LLMOverride] = None, temperature: Optional[float] = None) -> BaseChatModel:
        """Chat model for an override; unset override fields fall back to settings."""
        override = override or LLMOverride()
        if temperature is None:
            temperature = self.settings.chat_temperature
        api_key = override.api_key or self.settings.openai_api_key
        base_url = override.base_url or self.settings.get_base_url()
        model = override.model or self.settings.chat_model

        key = (api_key, base_url, model, temperature)
        if key not in self._models:
            logger.debug("chat_model_created", model=model, base_url=base_url, temperature=temperature)
            self._models[key] = self._factory(
                model=model,
                api_key=api_key,
                base_url=base_url,
                temperature=temperature,
                timeout=self.timeout,
                max_retries=self.settings.llm_max_retries,
            )
        return self._models[key]

    async def structured(
        self,
        schema: Type[SchemaT],
        messages: Sequence[BaseMessage],
        override: Optional[LLMOverride] = None,
    ) -> SchemaT:
        """
        Call the model constrained to a pydantic schema.

        Raises:
            ClassificationFailure: the call failed, timed out or returned nothing parseable
        """
        try:
            model = self.chat_model(override, temperature=self.settings.classification_temperature)
            runnable = model.with_structured_output(schema, method="function_calling")
            result = await asyncio.wait_for(runnable.ainvoke(list(messages)), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ClassificationFailure(f"{schema.__name__} call timed out after {self.timeout}s") from e
        except Exception as e:
            raise ClassificationFailure(f"{schema.__name__} call failed: {e}") from e

        if isinstance(result, dict):
            try:
                result = schema.model_validate(result)
            except ValidationError as e:
                raise ClassificationFailure(f"{schema.__name__} output failed validation: {e}") from e
        if not isinstance(result, schema):
            raise ClassificationFailure(f"{schema.__name__} call returned no parseable output")
        return result

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        override: Optional[LLMOverride] = None,
    ) -> str:
        """Free-text completion; non-string content is JSON-encoded."""
        model = self.chat_model(override)
        response = await asyncio.wait_for(model.ainvoke(list(messages)), timeout=self.timeout)
        content: Any = response.content
        if isinstance(content, str):
            return content
        return json.dumps(content, ensure_ascii=False)
