"""In-memory stand-ins for the LLM, vector store, embedder and notification channel."""
import asyncio
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from support_workflow.exceptions import ClassificationFailure, VectorStoreError
from support_workflow.models import (
    ChatMessage,
    HandoffRecord,
    KBChunk,
    KBFilter,
    SearchHit,
    Ticket,
    WorkflowDefinition,
)

BASE_TIME = datetime(2025, 8, 14, 9, 30, 0)


class FakeLLM:
    """
    Scripted replacement for LLMClient.

    ``structured`` maps a schema name to a dict, a model instance, an exception,
    or a list of those consumed in order. An unscripted schema raises
    ClassificationFailure, like a failed call.
    """

    def __init__(self, structured: Optional[Dict[str, Any]] = None, completions: Optional[List[Any]] = None):
        self.responses = dict(structured or {})
        self.completions = list(completions or [])
        self.structured_calls: List[str] = []
        self.structured_messages: List[Any] = []
        self.complete_calls: List[Any] = []

    async def structured(self, schema, messages, override=None):
        self.structured_calls.append(schema.__name__)
        self.structured_messages.append(list(messages))
        response = self.responses.get(schema.__name__)
        if isinstance(response, list):
            response = response.pop(0) if response else None
        if response is None:
            raise ClassificationFailure(f"{schema.__name__} not scripted")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return schema.model_validate(response)
        return response

    async def complete(self, messages, override=None):
        self.complete_calls.append(list(messages))
        if not self.completions:
            return "您好，已为您查询相关信息。"
        response = self.completions.pop(0) if len(self.completions) > 1 else self.completions[0]
        if isinstance(response, Exception):
            raise response
        return response

    def count(self, schema_name: str) -> int:
        return self.structured_calls.count(schema_name)


def make_hit(
    source_type: str,
    source_id: str,
    chunk_id: int,
    score: float = 0.5,
    content: Optional[str] = None,
    **metadata: Any,
) -> SearchHit:
    return SearchHit(
        id=f"{source_type}:{source_id}:{chunk_id}",
        content=content or f"{source_type} {source_id} chunk {chunk_id}",
        source_type=source_type,
        source_id=source_id,
        chunk_id=chunk_id,
        score=score,
        metadata=metadata,
    )


class FakeVectorStore:
    """
    Vector store driven by canned per-query results.

    Stored chunks back get_neighbors/get_by_source; ``results`` maps a query to
    the hits search returns. Queries in ``failing`` raise VectorStoreError
    ("*" fails every query) and queries in ``delays`` sleep first.
    """

    def __init__(
        self,
        hits: Sequence[SearchHit] = (),
        results: Optional[Dict[str, List[SearchHit]]] = None,
        failing: Sequence[str] = (),
        delays: Optional[Dict[str, float]] = None,
        neighbors_fail: bool = False,
    ):
        self.chunks: Dict[str, SearchHit] = {h.id: h for h in hits}
        self.results = dict(results or {})
        self.failing = set(failing)
        self.delays = dict(delays or {})
        self.neighbors_fail = neighbors_fail
        self.search_calls: List[tuple] = []
        self.neighbor_calls: List[tuple] = []
        self.access_updates: List[tuple] = []
        self.upserted: List[KBChunk] = []

    async def upsert(self, chunks: Sequence[KBChunk]) -> None:
        for chunk in chunks:
            self.upserted.append(chunk)
            self.chunks[chunk.key] = SearchHit(
                id=chunk.key,
                content=chunk.content,
                source_type=chunk.source_type.value,
                source_id=chunk.source_id,
                chunk_id=chunk.chunk_id,
                metadata=chunk.metadata,
            )

    async def search(self, query: str, k: int, filters: Optional[KBFilter] = None) -> List[SearchHit]:
        self.search_calls.append((query, k, filters))
        if query in self.delays:
            await asyncio.sleep(self.delays[query])
        if query in self.failing or "*" in self.failing:
            raise VectorStoreError(f"search failed for {query}")
        return [h.model_copy() for h in self.results.get(query, [])][:k]

    async def get_neighbors(self, source_type: str, source_id: str, chunk_id: int, window: int = 1) -> List[SearchHit]:
        self.neighbor_calls.append((source_type, source_id, chunk_id, window))
        if self.neighbors_fail:
            raise VectorStoreError("neighbors unavailable")
        found = [
            h.model_copy()
            for h in self.chunks.values()
            if h.source_type == source_type
            and h.source_id == source_id
            and abs((h.chunk_id or 0) - chunk_id) <= window
        ]
        return sorted(found, key=lambda h: h.chunk_id or 0)

    async def get_by_source(self, source_type: str, source_id: str) -> List[SearchHit]:
        found = [h for h in self.chunks.values() if h.source_type == source_type and h.source_id == source_id]
        return sorted(found, key=lambda h: h.chunk_id or 0)

    async def delete_by_source(self, source_type: str, source_id: str) -> None:
        self.chunks = {
            key: h for key, h in self.chunks.items()
            if not (h.source_type == source_type and h.source_id == source_id)
        }

    async def health(self) -> bool:
        return True

    async def update_access_count(self, chunk_ids: Sequence[str], context: Dict[str, Any]) -> None:
        self.access_updates.append((list(chunk_ids), dict(context)))


class KeywordEmbedder:
    """Deterministic bag-of-keywords embeddings for Chroma tests."""

    VOCABULARY = ["login", "error", "billing", "refund", "image", "pull", "network", "password"]

    def __init__(self):
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        words = re.findall(r"[a-z]+", (text or "").lower())
        # Constant last component keeps every vector non-zero
        return [float(words.count(term)) for term in self.VOCABULARY] + [0.1]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class RecordingChannel:
    """Notification channel that records what it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[HandoffRecord] = []

    async def send(self, record: HandoffRecord, ticket: Ticket) -> None:
        if self.fail:
            raise RuntimeError("webhook down")
        self.sent.append(record)


def make_ticket(ticket_id: str = "T-1", module: Optional[str] = "devbox", **fields: Any) -> Ticket:
    defaults = {"title": "DevBox 无法登录", "customer_id": 42, "agent_id": 7}
    defaults.update(fields)
    return Ticket(id=ticket_id, module=module, **defaults)


def make_message(
    message_id: int,
    content: Any,
    ticket_id: str = "T-1",
    role: str = "customer",
    minutes: int = 0,
    **fields: Any,
) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        ticket_id=ticket_id,
        sender_id=42 if role == "customer" else 7,
        sender_role=role,
        content=content,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **fields,
    )


def support_workflow_definition(workflow_id: str = "wf-support", intent_analysis: bool = True) -> WorkflowDefinition:
    """
    start -> emotion -> handoff (when handoffRequired) | rag -> chat -> end.
    """
    return WorkflowDefinition.model_validate(
        {
            "id": workflow_id,
            "name": "默认客服流程",
            "nodes": [
                {"id": "start", "type": "start"},
                {
                    "id": "emotion",
                    "type": "emotionDetector",
                    "config": {"systemPrompt": "判断情绪", "userPrompt": "{{lastCustomerMessage}}"},
                },
                {
                    "id": "rag",
                    "type": "rag",
                    "config": {
                        "enableIntentAnalysis": intent_analysis,
                        "intentAnalysisConfig": {
                            "intentAnalysisSystemPrompt": "是否需要检索",
                            "intentAnalysisUserPrompt": "{{lastCustomerMessage}}",
                        },
                        "generateSearchQueriesSystemPrompt": "生成检索词",
                        "generateSearchQueriesUserPrompt": "{{ticketModule}} {{lastCustomerMessage}}",
                    },
                },
                {
                    "id": "chat",
                    "type": "smartChat",
                    "config": {
                        "systemPrompt": "语气: {{stylePrompt}}",
                        "userPrompt": "{{retrievedContextString}}\n问题: {{lastCustomerMessage}}",
                    },
                },
                {
                    "id": "handoff",
                    "type": "handoff",
                    "config": {"messageTemplate": "已为您转接人工客服，原因: {{handoffReason}}"},
                },
                {"id": "end", "type": "end"},
            ],
            "edges": [
                {"id": "e1", "source": "start", "target": "emotion"},
                {"id": "e2", "source": "emotion", "target": "handoff", "condition": "handoffRequired === true"},
                {"id": "e3", "source": "emotion", "target": "rag"},
                {"id": "e4", "source": "rag", "target": "chat"},
                {"id": "e5", "source": "chat", "target": "end"},
                {"id": "e6", "source": "handoff", "target": "end"},
            ],
        }
    )
