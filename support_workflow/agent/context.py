"""Variable bag and prompt content built from workflow state.

Templates and edge conditions see a flat mapping of camelCase names; this module
derives that mapping from the state and assembles multimodal user content.
"""
import re
from typing import Any, Dict, List, Optional

from support_workflow.agent.state import AgentMessage, WorkflowState
from support_workflow.content import MessageContent, extract_image_urls, get_text_with_image_info, message_plain_text
from support_workflow.models import SearchHit, SentimentLabel, SourceType

HISTORY_MAX = 8
HISTORY_MAX_CHARS = 8000
TICKET_DESCRIPTION_MAX_CHARS = 4000
TICKET_TITLE_MAX_CHARS = 1000
MAX_IMAGES = 6

STYLE_PROMPTS = {
    SentimentLabel.NEUTRAL: "专业简洁",
    SentimentLabel.FRUSTRATED: "耐心安抚",
    SentimentLabel.ANGRY: "冷静礼貌",
    SentimentLabel.CONFUSED: "通俗易懂",
    SentimentLabel.ANXIOUS: "快速直接",
    SentimentLabel.REQUEST_AGENT: "礼貌引导",
    SentimentLabel.ABUSIVE: "冷静专业",
    SentimentLabel.SATISFIED: "友好热情",
}
DEFAULT_STYLE = "友善自然"

CONTEXT_LABELS = {
    SourceType.FAVORITED_CONVERSATION.value: "精选案例",
    SourceType.HISTORICAL_TICKET.value: "历史工单",
}
DEFAULT_CONTEXT_LABEL = "通用知识"

ROLE_LABELS = {"ai": "AI", "agent": "客服", "technician": "技术"}


def style_prompt(sentiment: Any) -> str:
    try:
        return STYLE_PROMPTS.get(SentimentLabel(sentiment), DEFAULT_STYLE)
    except ValueError:
        return DEFAULT_STYLE


def sanitize_query(query: str) -> str:
    """Strip quotes and trailing punctuation, collapse whitespace."""
    query = re.sub(r"[“”\"']", "", query or "").strip()
    query = re.sub(r"[，。；、,.!?]+$", "", query)
    return re.sub(r"\s+", " ", query).strip()


def _clip(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else text[:max_len] + "..."


def last_customer_message(messages: List[AgentMessage]) -> Optional[AgentMessage]:
    for message in reversed(messages or []):
        if (message.get("role") or "").lower() == "customer":
            return message
    return None


def history_block(messages: List[AgentMessage], max_chars: int = HISTORY_MAX_CHARS) -> str:
    """Numbered ``n. role: text`` lines for the most recent turns."""
    lines = []
    for index, message in enumerate(messages[-HISTORY_MAX:], start=1):
        label = ROLE_LABELS.get((message.get("role") or "user").lower(), "用户")
        lines.append(f"{index}. {label}: {message_plain_text(message.get('content', ''))}")
    return "\n".join(lines)[:max_chars]


def retrieved_context_string(hits: List[SearchHit]) -> str:
    return "\n\n".join(
        f"{i}. [{CONTEXT_LABELS.get(hit.source_type, DEFAULT_CONTEXT_LABEL)}]\n内容: {hit.content}"
        for i, hit in enumerate(hits, start=1)
    )


def get_variables(state: WorkflowState) -> Dict[str, Any]:
    """
    Flatten state into the variable bag seen by templates and edge conditions.

    Free-form ``variables`` come first; the derived names below override them.
    """
    messages = state.get("messages") or []
    ticket = state.get("current_ticket") or {}
    hits = state.get("retrieved_context") or []
    sentiment = state.get("sentiment_label", SentimentLabel.NEUTRAL)
    priority = state.get("handoff_priority")

    customer = last_customer_message(messages)
    last_text = message_plain_text(customer["content"]) if customer else ""
    if not last_text:
        last_text = f"问题: {ticket.get('title')}，发生模块 {ticket.get('module')}"

    description = ticket.get("description")
    description_text = (
        _clip(get_text_with_image_info(description), TICKET_DESCRIPTION_MAX_CHARS) if description else ""
    )

    return {
        **(state.get("variables") or {}),
        "sentiment": getattr(sentiment, "value", sentiment),
        "stylePrompt": style_prompt(sentiment),
        "handoffReason": state.get("handoff_reason", ""),
        "handoffPriority": getattr(priority, "value", priority),
        "handoffRequired": state.get("handoff_required", False),
        "proposeEscalation": state.get("propose_escalation", False),
        "escalationReason": state.get("escalation_reason", ""),
        "retrievedContext": [hit.model_dump() for hit in hits],
        "retrievedContextCount": len(hits),
        "retrievedContextString": retrieved_context_string(hits),
        "hasRetrievedContext": len(hits) > 0,
        "ticketDescription": description_text,
        "ticketModule": ticket.get("module") or "无",
        "ticketCategory": ticket.get("category") or "无",
        "ticketTitle": _clip(ticket.get("title") or "无", TICKET_TITLE_MAX_CHARS),
        "currentTicket": dict(ticket) if ticket else None,
        "lastCustomerMessage": last_text,
        "historyMessages": history_block(messages),
        "userQuery": state.get("user_query", ""),
        "searchQueries": list(state.get("search_queries") or []),
    }


def build_multimodal_user_content(
    prompt_text: str,
    state: WorkflowState,
    with_ticket_images: bool = True,
) -> MessageContent:
    """
    User prompt plus images from the ticket description and the latest customer turn.

    Images are deduplicated and capped at MAX_IMAGES, keeping the most recent.
    """
    urls: List[str] = []
    ticket = state.get("current_ticket") or {}
    if with_ticket_images and ticket.get("description"):
        urls.extend(extract_image_urls(ticket["description"]))

    customer = last_customer_message(state.get("messages") or [])
    if customer and not isinstance(customer.get("content"), str):
        for part in customer.get("content") or []:
            url = (part.get("image_url") or {}).get("url") if part.get("type") == "image_url" else None
            if url:
                urls.append(url)

    unique = list(dict.fromkeys(urls))[-MAX_IMAGES:]
    content: List[Dict[str, Any]] = [{"type": "text", "text": prompt_text}]
    content.extend({"type": "image_url", "image_url": {"url": url}} for url in unique)
    return content
