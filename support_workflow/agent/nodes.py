"""Workflow node implementations.

Each node takes the current WorkflowState, its own config and the shared
services, and returns a partial state update. LLM and store failures are
handled inside the node so that a conversation turn always completes.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage

from support_workflow.agent.context import build_multimodal_user_content, get_variables, sanitize_query
from support_workflow.agent.heuristics import quick_handoff_heuristic, quick_no_search_heuristic
from support_workflow.agent.llm import LLMClient
from support_workflow.agent.state import WorkflowState
from support_workflow.agent.templates import render_template
from support_workflow.config import Settings, get_settings
from support_workflow.exceptions import ClassificationFailure, PersistenceFailure
from support_workflow.models import (
    EmotionDetectionConfig,
    EscalationDecision,
    EscalationOfferConfig,
    HandoffConfig,
    HandoffRecord,
    KBFilter,
    Priority,
    RagConfig,
    SearchDecision,
    SearchQueries,
    SentimentDecision,
    SentimentLabel,
    SmartChatConfig,
    TicketStatus,
)
from support_workflow.notifications import HandoffNotifier
from support_workflow.repository import TicketRepository
from support_workflow.retrieval import RetrievalPipeline

logger = structlog.get_logger(__name__)

HEURISTIC_FALLBACK_REASON = "触发快路径守门"
WEAK_RETRIEVAL_REASON = "召回不足/上下文不充分"
DEFAULT_HANDOFF_REASON = "需要人工协助"
MAX_QUERIES = 3


@dataclass
class NodeServices:
    """Collaborators shared by every node of a compiled workflow."""
    llm: LLMClient
    retrieval: RetrievalPipeline
    repository: TicketRepository
    notifier: HandoffNotifier
    settings: Optional[Settings] = None

    def __post_init__(self):
        if self.settings is None:
            self.settings = get_settings()


def _ticket_id(state: WorkflowState) -> Optional[str]:
    return (state.get("current_ticket") or {}).get("id")


def _prompt_messages(system_prompt: str, user_content: Any) -> List[Any]:
    return [SystemMessage(content=system_prompt), HumanMessage(content=user_content)]


async def emotion_detector_node(
    state: WorkflowState, config: EmotionDetectionConfig, services: NodeServices
) -> Dict[str, Any]:
    """
    Classify sentiment and decide whether a human must take over.

    Explicit requests for a human or abusive language short-circuit without an
    LLM call. On LLM failure the sentiment falls back to NEUTRAL and the handoff
    flags are left untouched.
    """
    variables = get_variables(state)
    last_message = variables["lastCustomerMessage"]
    log = logger.bind(ticket_id=_ticket_id(state), node="emotion_detector")

    quick = quick_handoff_heuristic(last_message)
    if quick.handoff:
        log.info("handoff_heuristic_matched", reason=quick.reason)
        return {
            "user_query": last_message,
            "handoff_required": True,
            "handoff_reason": quick.reason or HEURISTIC_FALLBACK_REASON,
            "handoff_priority": Priority.P2,
            "sentiment_label": SentimentLabel.REQUEST_AGENT,
        }

    system_prompt = render_template(config.system_prompt, variables)
    user_prompt = render_template(config.user_prompt, variables)
    user_content = build_multimodal_user_content(user_prompt, state, with_ticket_images=False)

    try:
        decision = await services.llm.structured(
            SentimentDecision, _prompt_messages(system_prompt, user_content), config.llm
        )
    except ClassificationFailure as e:
        log.warning("emotion_detection_failed", error=e.message)
        return {"user_query": last_message, "sentiment_label": SentimentLabel.NEUTRAL}

    log.info(
        "emotion_detected",
        sentiment=decision.sentiment.value,
        handoff=decision.handoff,
        priority=decision.priority.value,
    )
    return {
        "user_query": last_message,
        "handoff_required": decision.handoff,
        "handoff_reason": decision.reasons[0] if decision.reasons else "",
        "handoff_priority": decision.priority,
        "sentiment_label": decision.sentiment,
    }


async def _should_search(
    state: WorkflowState, config: RagConfig, services: NodeServices, variables: Dict[str, Any], log
) -> bool:
    if not config.enable_intent_analysis:
        return True
    if quick_no_search_heuristic(variables["lastCustomerMessage"]):
        log.info("no_search_heuristic_matched")
        return False

    intent = config.intent_analysis
    system_prompt = render_template(intent.system_prompt if intent else "", variables)
    user_prompt = render_template(intent.user_prompt if intent else "", variables)
    user_content = build_multimodal_user_content(user_prompt, state, with_ticket_images=False)
    try:
        decision = await services.llm.structured(
            SearchDecision, _prompt_messages(system_prompt, user_content), intent.llm if intent else None
        )
    except ClassificationFailure as e:
        log.warning("search_intent_failed", error=e.message)
        return True
    log.info("search_intent_decided", action=decision.action)
    return decision.action == "NEED_SEARCH"


async def _generate_queries(
    state: WorkflowState, config: RagConfig, services: NodeServices, variables: Dict[str, Any], log
) -> List[str]:
    system_prompt = render_template(config.query_system_prompt, variables)
    user_prompt = render_template(config.query_user_prompt, variables)
    user_content = build_multimodal_user_content(user_prompt, state)
    try:
        generated = await services.llm.structured(
            SearchQueries, _prompt_messages(system_prompt, user_content), config.query_llm
        )
        queries = [q for q in dict.fromkeys(sanitize_query(q) for q in generated.queries) if q]
        queries = queries[:MAX_QUERIES]
    except ClassificationFailure as e:
        log.warning("query_generation_failed", error=e.message)
        queries = [q for q in [variables["lastCustomerMessage"]] if q]

    if not queries:
        queries = [f"{variables['ticketTitle']} {variables['ticketModule']}".strip()]
    return queries


async def rag_node(state: WorkflowState, config: RagConfig, services: NodeServices) -> Dict[str, Any]:
    """
    Retrieve knowledge for the latest customer message.

    Phase A (optional) decides whether to search at all; phase B generates 2-3
    queries and runs the retrieval pipeline.
    """
    variables = get_variables(state)
    log = logger.bind(ticket_id=_ticket_id(state), node="rag")

    if not await _should_search(state, config, services, variables, log):
        return {"retrieved_context": [], "search_queries": []}

    queries = await _generate_queries(state, config, services, variables, log)
    ticket = state.get("current_ticket") or {}
    filters = KBFilter(module=ticket["module"]) if ticket.get("module") else None

    result = await services.retrieval.retrieve(
        queries,
        filters=filters,
        fallback_query=variables["lastCustomerMessage"],
        access_context={
            "userQuery": variables["lastCustomerMessage"],
            "aiGenerateQueries": queries,
            "ticketId": ticket.get("id"),
            "ticketModule": ticket.get("module"),
        },
    )
    log.info("rag_complete", queries=queries, hits=len(result.hits))
    return {"retrieved_context": result.hits, "search_queries": queries}


async def smart_chat_node(state: WorkflowState, config: SmartChatConfig, services: NodeServices) -> Dict[str, Any]:
    """Generate the reply text. Errors yield an empty response."""
    log = logger.bind(ticket_id=_ticket_id(state), node="smart_chat")
    try:
        variables = get_variables(state)
        system_prompt = render_template(config.system_prompt, variables)
        user_prompt = render_template(config.user_prompt, variables)
        user_content: Any = user_prompt
        if config.enable_vision:
            include_ticket_images = bool(config.vision and config.vision.include_ticket_description_images)
            user_content = build_multimodal_user_content(user_prompt, state, include_ticket_images)

        text = await services.llm.complete(_prompt_messages(system_prompt, user_content), config.llm)
    except Exception as e:
        log.error("smart_chat_failed", error=str(e) or type(e).__name__)
        return {"response": ""}

    log.info("smart_chat_complete", response_length=len(text))
    return {"response": text}


async def escalation_offer_node(
    state: WorkflowState, config: EscalationOfferConfig, services: NodeServices
) -> Dict[str, Any]:
    """
    Decide whether to offer a human agent.

    Weak retrieval (at most one context chunk) is exposed to the prompts as
    ``weakRetrieval``. On LLM failure no escalation is proposed.
    """
    variables = get_variables(state)
    weak_retrieval = variables["retrievedContextCount"] <= 1
    variables["weakRetrieval"] = weak_retrieval
    log = logger.bind(ticket_id=_ticket_id(state), node="escalation_offer")

    system_prompt = render_template(config.system_prompt, variables)
    user_prompt = render_template(config.user_prompt, variables)
    user_content = build_multimodal_user_content(user_prompt, state, with_ticket_images=False)

    try:
        decision = await services.llm.structured(
            EscalationDecision, _prompt_messages(system_prompt, user_content), config.llm
        )
    except ClassificationFailure as e:
        log.warning("escalation_decision_failed", error=e.message)
        return {"propose_escalation": False}

    propose = decision.decision == "PROPOSE_ESCALATION"
    reason = decision.reasons[0] if decision.reasons else (WEAK_RETRIEVAL_REASON if weak_retrieval else "")
    update: Dict[str, Any] = {
        "propose_escalation": propose,
        "escalation_reason": reason,
        "handoff_priority": decision.priority,
    }
    if propose:
        update["response"] = render_template(config.offer_message_template, variables)
    log.info("escalation_decided", propose=propose, weak_retrieval=weak_retrieval, reason=reason)
    return update


async def handoff_node(state: WorkflowState, config: HandoffConfig, services: NodeServices) -> Dict[str, Any]:
    """
    Hand the ticket to a human agent.

    Creates at most one HandoffRecord per ticket, moves the ticket to pending
    and schedules the notification in the background. The rendered handoff
    message is returned even when persistence fails.
    """
    variables = get_variables(state)
    reason = variables["handoffReason"] or DEFAULT_HANDOFF_REASON
    text = render_template(config.message_template, variables)
    ticket_id = _ticket_id(state)
    log = logger.bind(ticket_id=ticket_id, node="handoff")
    repository = services.repository

    try:
        if not ticket_id:
            raise PersistenceFailure("No ticket id in workflow state")

        test_ticket = await repository.get_test_ticket(ticket_id)
        ticket = await repository.get_ticket(ticket_id)
        if test_ticket is not None and ticket is None:
            log.info("handoff_test_ticket_completed")
            return {"response": text}
        if ticket is None:
            raise PersistenceFailure(f"Ticket {ticket_id} not found", {"ticket_id": ticket_id})

        should_notify = False
        record = await repository.get_handoff_record(ticket.id)
        if record is None:
            record, created = await repository.create_handoff_record_if_absent(
                HandoffRecord(
                    ticket_id=ticket.id,
                    handoff_reason=reason,
                    priority=state.get("handoff_priority", Priority.P2),
                    sentiment=state.get("sentiment_label", SentimentLabel.NEUTRAL),
                    customer_id=ticket.customer_id,
                    assigned_agent_id=ticket.agent_id,
                    user_query=variables["userQuery"] or "",
                )
            )
            should_notify = created or not record.notification_sent
            log.info("handoff_record_created" if created else "handoff_record_raced", record_id=record.id)
        elif record.notification_sent:
            log.info("handoff_notification_already_sent", record_id=record.id)
        else:
            should_notify = True
            log.info("handoff_notification_pending", record_id=record.id)

        if ticket.status != TicketStatus.PENDING:
            await repository.update_ticket_status(ticket.id, TicketStatus.PENDING)

        if should_notify and not services.notifier.is_in_flight(record.id):
            services.notifier.dispatch(record, ticket, config.notify_channel)
    except PersistenceFailure as e:
        log.error("handoff_failed", error=e.message)
    except Exception as e:
        log.error("handoff_failed", error=str(e) or type(e).__name__)

    return {"response": text}
