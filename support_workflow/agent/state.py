"""Workflow state schema for compiled support workflows."""
from typing import Annotated, Any, Dict, List, Optional, TypedDict

from support_workflow.content import MessageContent
from support_workflow.models import Priority, SearchHit, SentimentLabel, Ticket


def merge_variables(current: Optional[Dict[str, Any]], update: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow union; keys in the update win."""
    return {**(current or {}), **(update or {})}


class AgentMessage(TypedDict, total=False):
    """One conversation turn; role is the sender's platform role (customer, agent, ai, ...)."""
    role: str
    content: MessageContent
    created_at: str


class TicketSummary(TypedDict, total=False):
    id: str
    title: str
    module: Optional[str]
    category: Optional[str]
    description: Any


class WorkflowState(TypedDict, total=False):
    """
    State that flows through a compiled workflow.

    Every field is last-write-wins except ``variables``, which is merged.
    """
    # Input
    messages: List[AgentMessage]
    current_ticket: Optional[TicketSummary]
    user_query: str

    # Emotion detection
    sentiment_label: SentimentLabel

    # Handoff
    handoff_required: bool
    handoff_reason: str
    handoff_priority: Priority

    # Escalation offer
    propose_escalation: bool
    escalation_reason: str

    # Retrieval
    search_queries: List[str]
    retrieved_context: List[SearchHit]

    # Output
    response: str

    # Free-form values shared between nodes
    variables: Annotated[Dict[str, Any], merge_variables]


def ticket_summary(ticket: Ticket) -> TicketSummary:
    return {
        "id": ticket.id,
        "title": ticket.title,
        "module": ticket.module,
        "category": ticket.category,
        "description": ticket.description,
    }


def initial_state(
    messages: List[AgentMessage],
    ticket: Optional[TicketSummary] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> WorkflowState:
    """Fresh state with every field at its default."""
    return {
        "messages": messages,
        "current_ticket": ticket,
        "user_query": "",
        "sentiment_label": SentimentLabel.NEUTRAL,
        "handoff_required": False,
        "handoff_reason": "",
        "handoff_priority": Priority.P2,
        "propose_escalation": False,
        "escalation_reason": "",
        "search_queries": [],
        "retrieved_context": [],
        "response": "",
        "variables": dict(variables or {}),
    }
