"""Domain schemas for runs, snapshots, tool calls, scoring and memory cycles."""

from .base import BaseSchema, DocumentSchema
from .domain import (
    ApprovalDecision,
    CompletionRunResult,
    CompletionStrategy,
    FinishReason,
    ModelErrorKind,
    ObservationCycle,
    ObservationCycleStatus,
    OMOperationType,
    PermissionPolicy,
    Run,
    RunOutcome,
    RunStatus,
    ScorerResult,
    StepResult,
    StepStatus,
    SuspendedMarker,
    ToolCall,
    ToolCallRequest,
    ToolCategory,
    WorkflowRun,
    WorkflowRunsPage,
    WorkflowRunState,
)

__all__ = [
    "BaseSchema",
    "DocumentSchema",
    "ApprovalDecision",
    "CompletionRunResult",
    "CompletionStrategy",
    "FinishReason",
    "ModelErrorKind",
    "ObservationCycle",
    "ObservationCycleStatus",
    "OMOperationType",
    "PermissionPolicy",
    "Run",
    "RunOutcome",
    "RunStatus",
    "ScorerResult",
    "StepResult",
    "StepStatus",
    "SuspendedMarker",
    "ToolCall",
    "ToolCallRequest",
    "ToolCategory",
    "WorkflowRun",
    "WorkflowRunsPage",
    "WorkflowRunState",
]
