"""Runtime driver: rebuilds conversation state for a ticket and runs its workflow."""
import asyncio
from typing import List, Optional

import structlog

from support_workflow.agent.cache import WorkflowCache
from support_workflow.agent.state import AgentMessage, initial_state, ticket_summary
from support_workflow.config import Settings, get_settings
from support_workflow.content import convert_to_multimodal_message, to_rich_text
from support_workflow.exceptions import EmptyResponseError, WorkflowNotFoundError
from support_workflow.models import ChatMessage, Ticket
from support_workflow.repository import TicketRepository

logger = structlog.get_logger(__name__)

__all__ = ["WorkflowRuntime", "to_rich_text"]


def history_from_messages(messages: List[ChatMessage]) -> List[AgentMessage]:
    """Convert stored messages to state turns, oldest first."""
    ordered = sorted(messages, key=lambda m: (m.created_at, m.id))
    return [
        {
            "role": message.sender_role or "user",
            "content": convert_to_multimodal_message(message.content),
            "created_at": message.created_at.isoformat(),
        }
        for message in ordered
    ]


class WorkflowRuntime:
    """Produces the AI reply for a ticket's latest turn."""

    def __init__(
        self,
        cache: WorkflowCache,
        repository: TicketRepository,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.cache = cache
        self.repository = repository
        self.max_retries = settings.runtime_max_retries
        self.retry_delay = settings.runtime_retry_delay_seconds

    async def get_ai_response(self, ticket: Ticket, is_workflow_test: bool = False) -> str:
        """
        Run the ticket's workflow and return its reply.

        The workflow is chosen by ticket module, then the fallback scope. An
        empty reply or an exception triggers up to ``max_retries`` further
        attempts; "" is returned when all attempts come back empty.

        Raises:
            WorkflowNotFoundError: neither the module scope nor the fallback scope has a workflow
        """
        log = logger.bind(ticket_id=ticket.id, module=ticket.module, is_test=is_workflow_test)
        messages = await self.repository.list_messages(ticket.id, is_test=is_workflow_test)
        history = history_from_messages(messages)

        workflow = self.cache.get_workflow(ticket.module) or self.cache.get_fallback_workflow()
        if workflow is None:
            raise WorkflowNotFoundError(
                f"No workflow available for scope {ticket.module!r} and the fallback scope is missing",
                {"scope": ticket.module, "available": self.cache.get_scopes()},
            )

        for attempt in range(self.max_retries + 1):
            try:
                result = await workflow.ainvoke(initial_state(history, ticket_summary(ticket)))
                response = result.get("response") or ""
                if not response:
                    raise EmptyResponseError("Workflow produced an empty response", {"workflow_id": workflow.workflow_id})
                log.info("ai_response_ready", workflow_id=workflow.workflow_id, attempt=attempt)
                return response
            except EmptyResponseError as e:
                log.warning("ai_response_empty", attempt=attempt, **e.details)
            except Exception as e:
                log.error("workflow_invoke_failed", attempt=attempt, error=str(e) or type(e).__name__)

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay)

        log.warning("ai_response_exhausted", attempts=self.max_retries + 1)
        return ""
