from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import ConfigDict, Field

from .base import BaseSchema, DocumentSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _now_ms() -> int:
    return int(time.time() * 1000)


class RunStatus(str, Enum):
    pending = "pending"
    running = "running"
    suspended = "suspended"
    completed = "completed"
    failed = "failed"
    aborted = "aborted"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.completed, RunStatus.failed, RunStatus.aborted})


class FinishReason(str, Enum):
    complete = "complete"
    max_iterations = "max_iterations"
    aborted = "aborted"
    suspended = "suspended"
    failed = "failed"


class StepStatus(str, Enum):
    running = "running"
    success = "success"
    failed = "failed"
    suspended = "suspended"


class ToolCategory(str, Enum):
    read = "read"
    edit = "edit"
    execute = "execute"
    mcp = "mcp"
    other = "other"


class PermissionPolicy(str, Enum):
    allow = "allow"
    ask = "ask"
    deny = "deny"


class ApprovalDecision(str, Enum):
    approve = "approve"
    decline = "decline"
    always_allow_category = "always_allow_category"
    yolo = "yolo"


class CompletionStrategy(str, Enum):
    all = "all"
    any = "any"


class ModelErrorKind(str, Enum):
    auth = "auth"
    model_not_found = "model_not_found"
    context_length = "context_length"
    rate_limit = "rate_limit"
    network = "network"
    unknown = "unknown"


TRANSIENT_MODEL_ERRORS = frozenset({ModelErrorKind.rate_limit, ModelErrorKind.network})


class OMOperationType(str, Enum):
    observation = "observation"
    reflection = "reflection"


class ObservationCycleStatus(str, Enum):
    buffering = "buffering"
    active = "active"
    activated = "activated"
    failed = "failed"


# ---------------------------------------------------------------------------
# Runs and snapshots
# ---------------------------------------------------------------------------


class Run(BaseSchema):
    run_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_name: str
    resource_id: Optional[str] = None
    status: RunStatus = RunStatus.pending
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)


class StepResult(DocumentSchema):
    """Outcome of one named unit of work, stored under ``context[step_id]``."""

    status: StepStatus = StepStatus.success
    output: Any = None
    payload: Any = None
    error: Optional[str] = None
    suspend_payload: Optional[Dict[str, Any]] = Field(default=None, alias="suspendPayload")
    resume_payload: Any = Field(default=None, alias="resumePayload")
    started_at: int = Field(default_factory=_now_ms, alias="startedAt")
    ended_at: Optional[int] = Field(default=None, alias="endedAt")


class WorkflowRunState(DocumentSchema):
    """The resumable snapshot document for one ``(workflow_name, run_id)``.

    ``context`` maps step ids to serialized ``StepResult`` documents. Writers must
    go through the repository merge operations; never replace ``context``
    wholesale from a stale copy.
    """

    run_id: str = Field(alias="runId")
    status: str = RunStatus.pending.value
    value: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    active_paths: List[Any] = Field(default_factory=list, alias="activePaths")
    active_steps_path: Dict[str, Any] = Field(default_factory=dict, alias="activeStepsPath")
    serialized_step_graph: List[Any] = Field(default_factory=list, alias="serializedStepGraph")
    suspended_paths: Dict[str, Any] = Field(default_factory=dict, alias="suspendedPaths")
    resume_labels: Dict[str, Any] = Field(default_factory=dict, alias="resumeLabels")
    waiting_paths: Dict[str, Any] = Field(default_factory=dict, alias="waitingPaths")
    request_context: Dict[str, Any] = Field(default_factory=dict, alias="requestContext")
    timestamp: int = Field(default_factory=_now_ms)
    result: Any = None
    error: Any = None

    @classmethod
    def empty(cls, run_id: str) -> "WorkflowRunState":
        return cls(run_id=run_id)

    def step_result(self, step_id: str) -> Optional[StepResult]:
        raw = self.context.get(step_id)
        if raw is None:
            return None
        return StepResult.model_validate(raw)


class WorkflowRun(BaseSchema):
    """One persisted snapshot row as returned by listing and lookup."""

    workflow_name: str
    run_id: str
    resource_id: Optional[str] = None
    snapshot: WorkflowRunState
    created_at: datetime
    updated_at: datetime

    @property
    def status(self) -> str:
        return self.snapshot.status


class WorkflowRunsPage(BaseSchema):
    runs: List[WorkflowRun] = Field(default_factory=list)
    total: int = 0


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolCallRequest(BaseSchema):
    id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}")
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolCall(BaseSchema):
    """A finalized tool call. Immutable once produced by the dispatcher."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    is_error: bool = False
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: datetime = Field(default_factory=_utc_now)
    suspended: bool = False
    suspend_payload: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Completion scoring
# ---------------------------------------------------------------------------


class ScorerResult(BaseSchema):
    score: float
    passed: bool
    reason: Optional[str] = None
    scorer_id: str
    scorer_name: str
    duration: float = 0.0


class CompletionRunResult(BaseSchema):
    complete: bool
    completion_reason: Optional[str] = None
    scorers: List[ScorerResult] = Field(default_factory=list)
    total_duration: float = 0.0
    timed_out: bool = False


# ---------------------------------------------------------------------------
# Observational memory
# ---------------------------------------------------------------------------


class ObservationCycle(BaseSchema):
    cycle_id: str = Field(default_factory=lambda: str(uuid4()))
    operation_type: OMOperationType
    status: ObservationCycleStatus = ObservationCycleStatus.buffering
    tokens_involved: int = 0
    observations: str = ""
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


class SuspendedMarker(BaseSchema):
    run_id: str
    step_id: str
    tool_call_id: str
    tool_name: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RunOutcome(BaseSchema):
    run_id: str
    workflow_name: str
    status: RunStatus
    finish_reason: FinishReason
    reason: Optional[str] = None
    output: Optional[str] = None
    iterations: int = 0
    suspended: Optional[SuspendedMarker] = None
    completion: Optional[CompletionRunResult] = None
