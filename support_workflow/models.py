"""Data models for the support workflow engine."""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator


class NodeType(str, Enum):
    """Node kinds understood by the workflow compiler."""

    EMOTION_DETECTOR = "emotionDetector"
    RAG = "rag"
    SMART_CHAT = "smartChat"
    ESCALATION_OFFER = "escalationOffer"
    HANDOFF = "handoff"
    START = "start"
    END = "end"


class SentimentLabel(str, Enum):
    """Customer sentiment labels produced by the emotion detector."""

    NEUTRAL = "NEUTRAL"
    FRUSTRATED = "FRUSTRATED"
    ANGRY = "ANGRY"
    REQUEST_AGENT = "REQUEST_AGENT"
    ABUSIVE = "ABUSIVE"
    CONFUSED = "CONFUSED"
    ANXIOUS = "ANXIOUS"
    SATISFIED = "SATISFIED"


class Priority(str, Enum):
    """Handoff priority."""

    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class SourceType(str, Enum):
    """Origin of an indexed knowledge chunk."""

    FAVORITED_CONVERSATION = "favorited_conversation"
    HISTORICAL_TICKET = "historical_ticket"
    GENERAL_KNOWLEDGE = "general_knowledge"


SOURCE_WEIGHTS: Dict[str, float] = {
    SourceType.FAVORITED_CONVERSATION.value: 1.0,
    SourceType.HISTORICAL_TICKET.value: 0.8,
    SourceType.GENERAL_KNOWLEDGE.value: 0.6,
}
DEFAULT_SOURCE_WEIGHT = 0.5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# Sources whose chunks are consecutive slices of one conversation
DIALOG_SOURCE_TYPES = {
    SourceType.FAVORITED_CONVERSATION.value,
    SourceType.HISTORICAL_TICKET.value,
}


class _AuthoringModel(BaseModel):
    """Base for models parsed from the JSON authoring format (camelCase keys)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Node configuration
# ---------------------------------------------------------------------------


class LLMOverride(_AuthoringModel):
    """Per-node model override; unset fields fall back to settings."""

    api_key: Optional[str] = Field(default=None, alias="apiKey")
    base_url: Optional[str] = Field(default=None, alias="baseURL")
    model: Optional[str] = None


class EmotionDetectionConfig(_AuthoringModel):
    system_prompt: str = Field(default="", alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    llm: Optional[LLMOverride] = None


class IntentAnalysisConfig(_AuthoringModel):
    system_prompt: str = Field(default="", alias="intentAnalysisSystemPrompt")
    user_prompt: str = Field(default="", alias="intentAnalysisUserPrompt")
    llm: Optional[LLMOverride] = Field(default=None, alias="intentAnalysisLLM")


class RagConfig(_AuthoringModel):
    enable_intent_analysis: bool = Field(default=False, alias="enableIntentAnalysis")
    intent_analysis: Optional[IntentAnalysisConfig] = Field(
        default=None, alias="intentAnalysisConfig"
    )
    query_system_prompt: str = Field(default="", alias="generateSearchQueriesSystemPrompt")
    query_user_prompt: str = Field(default="", alias="generateSearchQueriesUserPrompt")
    query_llm: Optional[LLMOverride] = Field(default=None, alias="generateSearchQueriesLLM")


class VisionConfig(_AuthoringModel):
    include_ticket_description_images: bool = Field(
        default=False, alias="includeTicketDescriptionImages"
    )


class SmartChatConfig(_AuthoringModel):
    system_prompt: str = Field(default="", alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    llm: Optional[LLMOverride] = None
    enable_vision: bool = Field(default=False, alias="enableVision")
    vision: Optional[VisionConfig] = Field(default=None, alias="visionConfig")


class EscalationOfferConfig(_AuthoringModel):
    system_prompt: str = Field(default="", alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    offer_message_template: str = Field(default="", alias="escalationOfferMessageTemplate")
    llm: Optional[LLMOverride] = None


class HandoffConfig(_AuthoringModel):
    message_template: str = Field(default="", alias="messageTemplate")
    notify_channel: str = Field(default="feishu", alias="notifyChannel")


# ---------------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------------


class _BaseNode(_AuthoringModel):
    id: str
    name: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class StartNode(_BaseNode):
    type: Literal["start"]


class EndNode(_BaseNode):
    type: Literal["end"]


class EmotionDetectorNode(_BaseNode):
    type: Literal["emotionDetector"]
    config: EmotionDetectionConfig = Field(default_factory=EmotionDetectionConfig)


class RagNode(_BaseNode):
    type: Literal["rag"]
    config: RagConfig = Field(default_factory=RagConfig)


class SmartChatNode(_BaseNode):
    type: Literal["smartChat"]
    config: SmartChatConfig = Field(default_factory=SmartChatConfig)


class EscalationOfferNode(_BaseNode):
    type: Literal["escalationOffer"]
    config: EscalationOfferConfig = Field(default_factory=EscalationOfferConfig)


class HandoffNode(_BaseNode):
    type: Literal["handoff"]
    config: HandoffConfig = Field(default_factory=HandoffConfig)


WorkflowNode = Annotated[
    Union[
        StartNode,
        EndNode,
        EmotionDetectorNode,
        RagNode,
        SmartChatNode,
        EscalationOfferNode,
        HandoffNode,
    ],
    Field(discriminator="type"),
]


class WorkflowEdge(_AuthoringModel):
    id: str
    source: str
    target: str
    condition: Optional[str] = None
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")

    @field_validator("id", "source", "target", mode="before")
    @classmethod
    def _coerce_ref(cls, value: Any) -> str:
        return str(value)

    @field_validator("condition", mode="before")
    @classmethod
    def _blank_condition(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class WorkflowDefinition(_AuthoringModel):
    """A node graph as authored in the workflow editor."""

    id: str
    name: str = ""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class AIRoleConfig(_AuthoringModel):
    """Binds a scope (e.g. a ticket module) to an AI persona and its workflow."""

    id: str
    scope: str
    ai_user_id: int = Field(alias="aiUserId")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    is_active: bool = Field(default=True, alias="isActive")
    workflow: Optional[WorkflowDefinition] = None

    @field_validator("id", "workflow_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


class KBChunk(BaseModel):
    """A unit of indexed knowledge; chunk_id 0 is the source's summary."""

    source_type: SourceType
    source_id: str
    chunk_id: int = Field(ge=0)
    title: Optional[str] = None
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.source_type.value}:{self.source_id}:{self.chunk_id}"


class KBFilter(BaseModel):
    module: Optional[str] = None
    source_type: Optional[List[SourceType]] = None


class SearchHit(BaseModel):
    """A scored retrieval result."""

    id: str
    content: str
    source_type: str
    source_id: Optional[str] = None
    chunk_id: Optional[int] = None
    score: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "source_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @property
    def source_key(self) -> str:
        return f"{self.source_type}:{self.source_id or ''}"

    @property
    def is_summary(self) -> bool:
        return self.chunk_id == 0 or self.metadata.get("is_summary") is True


# ---------------------------------------------------------------------------
# Tickets and handoff
# ---------------------------------------------------------------------------


class TicketStatus(str, Enum):
    PENDING = "pending"  # waiting for a human agent
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    SCHEDULED = "scheduled"


class Ticket(BaseModel):
    id: str
    title: str = ""
    description: Optional[Any] = None  # rich-text document or plain text
    module: Optional[str] = None
    category: Optional[str] = None
    status: TicketStatus = TicketStatus.IN_PROGRESS
    customer_id: Optional[int] = None
    agent_id: Optional[int] = None
    priority: Optional[str] = None
    area: Optional[str] = None


class ChatMessage(BaseModel):
    id: int
    ticket_id: str
    sender_id: Optional[int] = None
    sender_role: Optional[str] = None
    content: Any = ""
    created_at: datetime
    is_internal: bool = False
    withdrawn: bool = False


class HandoffRecord(BaseModel):
    id: Optional[int] = None
    ticket_id: str
    handoff_reason: str
    priority: Priority = Priority.P2
    sentiment: SentimentLabel = SentimentLabel.NEUTRAL
    customer_id: Optional[int] = None
    assigned_agent_id: Optional[int] = None
    user_query: str = ""
    notification_sent: bool = False
    notification_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Structured LLM outputs
# ---------------------------------------------------------------------------


class SentimentDecision(BaseModel):
    """Classify the customer's sentiment and whether a human should take over."""

    sentiment: SentimentLabel
    handoff: bool
    reasons: List[str] = Field(default_factory=list, max_length=10)
    priority: Priority = Priority.P2


class SearchDecision(BaseModel):
    """Decide whether the knowledge base must be searched for this message."""

    action: Literal["NEED_SEARCH", "NO_SEARCH"]
    reasons: List[str] = Field(default_factory=list, max_length=10)


class SearchQueries(BaseModel):
    """Two or three diverse knowledge-base search queries."""

    queries: List[Annotated[str, StringConstraints(min_length=2, max_length=80)]] = Field(
        min_length=2, max_length=3
    )


class EscalationDecision(BaseModel):
    """Decide whether to offer the customer a human agent."""

    decision: Literal["PROPOSE_ESCALATION", "CONTINUE"]
    reasons: List[str] = Field(default_factory=list, max_length=10)
    priority: Priority = Priority.P2


class KnowledgeSummary(BaseModel):
    """Dense summary of a resolved support conversation."""

    problem_summary: str = Field(default="", description="Short summary of the customer's problem")
    solution_steps: List[str] = Field(default_factory=list, description="Key resolution steps in order")
    generated_queries: List[str] = Field(default_factory=list, description="Search queries for this problem")
    tags: List[str] = Field(default_factory=list, description="3-8 topic keywords")


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


class AIResponseRequest(BaseModel):
    is_workflow_test: bool = False


class AIResponse(BaseModel):
    ticket_id: str
    response: str
    rich_text: Dict[str, Any]
    latency_ms: float


class WorkflowValidationResponse(BaseModel):
    workflow_id: str
    valid: bool = True
    nodes: List[str]
    excluded_nodes: List[str] = Field(default_factory=list)
    has_cycle: bool = False


class RefreshResponse(BaseModel):
    scopes: List[str]
    workflow_count: int


class HealthResponse(BaseModel):
    status: str
    vector_store: bool
    scopes: int
    timestamp: datetime = Field(default_factory=utc_now)
