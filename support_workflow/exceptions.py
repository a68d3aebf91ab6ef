"""Error taxonomy for the workflow engine."""
from typing import Optional


class WorkflowError(Exception):
    """Base exception for the workflow engine."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StructuralError(WorkflowError):
    """A workflow definition violates a graph invariant and cannot be compiled."""

    code = "structural_error"


class NoStartError(StructuralError):
    code = "no_start"


class MultipleStartError(StructuralError):
    code = "multiple_start"


class NoEndError(StructuralError):
    code = "no_end"


class NoReachableEndError(StructuralError):
    code = "no_reachable_end"


class InvalidStartEdgesError(StructuralError):
    code = "invalid_start_edges"


class InvalidNodeIdError(StructuralError):
    code = "invalid_node_id"


class DuplicateNodeIdError(StructuralError):
    code = "duplicate_node_id"


class ConditionError(WorkflowError):
    """An edge condition could not be parsed or evaluated."""


class ClassificationFailure(WorkflowError):
    """A decision node's LLM call failed or returned unusable output."""


class RetrievalFailure(WorkflowError):
    """A knowledge search branch failed."""


class PersistenceFailure(WorkflowError):
    """A handoff record or ticket status write failed."""


class EmptyResponseError(WorkflowError):
    """The terminal node produced no text."""


class WorkflowNotFoundError(WorkflowError):
    """No compiled workflow is available for a scope (fallback included)."""


class VectorStoreError(WorkflowError):
    """A vector store backend call failed."""
