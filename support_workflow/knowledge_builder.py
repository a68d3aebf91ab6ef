"""Builds knowledge-base chunks from resolved tickets, favorited conversations and documents."""
import re
from typing import Any, Dict, List, Optional, Sequence

import structlog
from langchain_core.messages import HumanMessage

from support_workflow.agent.llm import LLMClient
from support_workflow.config import Settings, get_settings
from support_workflow.content import extract_image_urls, get_text_with_image_info
from support_workflow.models import (
    ChatMessage,
    KBChunk,
    KnowledgeSummary,
    LLMOverride,
    SourceType,
    Ticket,
)
from support_workflow.vector_store import VectorStore

logger = structlog.get_logger(__name__)

PER_MESSAGE_MAX = 5000
DESCRIPTION_MAX = 2000
TITLE_MAX = 500

SUMMARY_INSTRUCTIONS = [
    "请阅读以下客服工单的基本信息与按时间排序的对话，仅基于这些已知事实生成摘要。",
    "1) problem_summary：用中文精准概括用户问题，不引入未出现的推断。",
    "2) solution_steps：依据客服/技术在对话中明确给出的处理方案整理，按顺序给出。",
    "3) generated_queries：用于检索知识库的高精度检索词，优先包含模块名、错误码与关键操作。",
    "4) tags：3-8 个高置信标签。",
    "5) 信息不足时对应字段留空，绝不臆测。",
]

_SENTENCE_SPLIT = re.compile(r"(?<=[。！？!?.])\s+|\n+")


def truncate_text(text: str, max_len: int) -> str:
    if not text or len(text) <= max_len:
        return text or ""
    return text[: max(0, max_len - 1)] + "…"


def normalize_whitespace(text: str) -> str:
    text = re.sub("[\\u200b-\\u200d\\ufeff]", "", text or "")
    return re.sub(r"\s+", " ", text).strip()


def role_label(role: Optional[str], sender_id: Optional[int] = None, customer_id: Optional[int] = None) -> str:
    role = (role or "").lower()
    if role == "ai":
        return "AI"
    if role == "agent":
        return "客服"
    if role == "technician":
        return "技术"
    if role in ("customer", "user"):
        return "用户"
    return "用户" if sender_id is not None and sender_id == customer_id else "客服"


def format_conversation(
    messages: Sequence[ChatMessage],
    customer_id: Optional[int] = None,
    per_message_max: int = PER_MESSAGE_MAX,
) -> str:
    """
    Render visible messages as numbered transcript lines.

    Example line: ``1. [2025-08-14 09:31:22] 用户: 登录报错``
    """
    lines = []
    visible = [m for m in messages if not m.is_internal and not m.withdrawn]
    for index, message in enumerate(visible, start=1):
        label = role_label(message.sender_role, message.sender_id, customer_id)
        text = truncate_text(normalize_whitespace(get_text_with_image_info(message.content)), per_message_max)
        stamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
        lines.append(f"{index}. [{stamp}] {label}: {text}")
    return "\n".join(lines)


def split_into_chunks(text: str, max_chars: int = 1200) -> List[str]:
    """
    Split text into chunks of at most max_chars.

    Paragraphs (blank-line separated) are packed greedily; an oversized paragraph
    is split on sentence boundaries, and an oversized sentence is hard-cut.
    """
    chunks: List[str] = []
    buffer = ""

    def push_buffer() -> None:
        nonlocal buffer
        if buffer.strip():
            chunks.append(buffer.strip())
        buffer = ""

    def try_append(piece: str) -> bool:
        nonlocal buffer
        candidate = f"{buffer}\n\n{piece}" if buffer else piece
        if len(candidate) <= max_chars:
            buffer = candidate
            return True
        return False

    def flush_local(local: str) -> None:
        nonlocal buffer
        if not local.strip() or try_append(local):
            return
        push_buffer()
        if try_append(local):
            return
        for start in range(0, len(local), max_chars):
            piece = local[start:start + max_chars]
            if not try_append(piece):
                push_buffer()
                buffer = piece

    for paragraph in re.split(r"\n{2,}", text or ""):
        if try_append(paragraph):
            continue
        local = ""
        for sentence in _SENTENCE_SPLIT.split(paragraph):
            candidate = f"{local} {sentence}" if local else sentence
            if len(candidate) > max_chars:
                flush_local(local)
                local = sentence
            else:
                local = candidate
        flush_local(local)

    push_buffer()
    return chunks


class KnowledgeBuilder:
    """Summarizes support conversations with the LLM and indexes them as chunks."""

    def __init__(self, store: VectorStore, llm: LLMClient, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = store
        self.llm = llm
        self.summary_llm = LLMOverride(model=self.settings.summary_model)
        self.chunk_max_chars = self.settings.chunk_max_chars

    async def summarize(self, ticket: Ticket, transcript: str, image_urls: List[str]) -> KnowledgeSummary:
        """AI summary of a conversation; falls back to an empty summary on failure."""
        prompt = "\n".join(
            SUMMARY_INSTRUCTIONS
            + [
                "",
                "工单信息：",
                f"- 标题: {truncate_text(ticket.title, TITLE_MAX)}",
                f"- 描述: {truncate_text(get_text_with_image_info(ticket.description), DESCRIPTION_MAX)}",
                f"- 分类: {ticket.category or ''}",
                f"- 模块: {ticket.module or ''}",
                "",
                "对话记录（按时间排序）：",
                transcript,
            ]
        )
        content: Any = prompt
        if image_urls:
            content = [{"type": "text", "text": prompt}] + [
                {"type": "image_url", "image_url": {"url": url}} for url in image_urls
            ]
        try:
            return await self.llm.structured(KnowledgeSummary, [HumanMessage(content=content)], self.summary_llm)
        except Exception as e:
            logger.warning("kb_summary_failed", ticket_id=ticket.id, error=str(e))
            return KnowledgeSummary()

    def _summary_content(self, ticket: Ticket, summary: KnowledgeSummary) -> str:
        title = truncate_text(ticket.title, TITLE_MAX)
        lines = [f"问题: {summary.problem_summary or title}"]
        if summary.solution_steps:
            lines.append("解决步骤:\n- " + "\n- ".join(summary.solution_steps))
        if summary.generated_queries:
            lines.append("搜索关键词: " + ", ".join(summary.generated_queries))
        if summary.tags:
            lines.append("标签: " + ", ".join(summary.tags))
        lines.extend(
            [
                "",
                "原始工单信息:",
                f"- 标题: {title}",
                f"- 描述: {truncate_text(get_text_with_image_info(ticket.description), DESCRIPTION_MAX)}",
                f"- 模块: {ticket.module or ''}",
                f"- 分类: {ticket.category or ''}",
                f"- 区域: {ticket.area or ''}",
            ]
        )
        return "\n".join(lines)

    async def build_conversation(
        self,
        source_type: SourceType,
        ticket: Ticket,
        messages: Sequence[ChatMessage],
    ) -> List[KBChunk]:
        """
        Index one conversation: chunk 0 is the enhanced summary, 1..n the transcript.

        Args:
            source_type: favorited_conversation or historical_ticket
            ticket: Ticket the conversation belongs to
            messages: Messages in creation order

        Returns:
            The chunks that were upserted
        """
        log = logger.bind(ticket_id=ticket.id, source_type=source_type.value)
        transcript = format_conversation(messages, ticket.customer_id)

        image_urls = extract_image_urls(ticket.description)
        for message in messages:
            image_urls.extend(extract_image_urls(message.content))

        summary = await self.summarize(ticket, transcript, image_urls)
        base_metadata: Dict[str, Any] = {
            "ticket_id": ticket.id,
            "module": ticket.module,
            "area": ticket.area,
            "category": ticket.category,
            **summary.model_dump(),
        }
        title = truncate_text(ticket.title, TITLE_MAX)

        chunks = [
            KBChunk(
                source_type=source_type,
                source_id=ticket.id,
                chunk_id=0,
                title=title,
                content=self._summary_content(ticket, summary),
                metadata={**base_metadata, "is_summary": True},
            )
        ]
        for index, piece in enumerate(split_into_chunks(transcript, self.chunk_max_chars), start=1):
            chunks.append(
                KBChunk(
                    source_type=source_type,
                    source_id=ticket.id,
                    chunk_id=index,
                    title=f"{title}（对话）",
                    content=piece,
                    metadata={**base_metadata, "is_summary": False},
                )
            )

        await self.store.upsert(chunks)
        log.info("kb_conversation_indexed", chunk_count=len(chunks))
        return chunks

    async def build_favorited_conversation(self, ticket: Ticket, messages: Sequence[ChatMessage]) -> List[KBChunk]:
        return await self.build_conversation(SourceType.FAVORITED_CONVERSATION, ticket, messages)

    async def build_historical_ticket(self, ticket: Ticket, messages: Sequence[ChatMessage]) -> List[KBChunk]:
        return await self.build_conversation(SourceType.HISTORICAL_TICKET, ticket, messages)

    async def build_general_knowledge(
        self,
        source_id: str,
        title: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[KBChunk]:
        """Index a plain document; chunks are numbered from 1 (no summary chunk)."""
        chunks = [
            KBChunk(
                source_type=SourceType.GENERAL_KNOWLEDGE,
                source_id=source_id,
                chunk_id=index,
                title=title,
                content=piece,
                metadata={**(metadata or {}), "is_summary": False},
            )
            for index, piece in enumerate(split_into_chunks(text, self.chunk_max_chars), start=1)
        ]
        await self.store.upsert(chunks)
        logger.info("kb_document_indexed", source_id=source_id, chunk_count=len(chunks))
        return chunks
