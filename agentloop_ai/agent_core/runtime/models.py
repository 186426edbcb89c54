from __future__ import annotations

"""Runtime dependency bundle, per-run context and LangGraph state types.

The runtime engine is designed to be dependency-injected.

- ``EngineDeps`` collects the collaborators the engine needs.
- ``RunContext`` is the explicitly owned, run-scoped state (message history,
  permissions, abort signal) threaded through every graph node.
- ``_GraphState`` is the small routing state passed between LangGraph nodes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, NotRequired, Optional, Required, Sequence, TypedDict

from ...core.config import LoopConfig, ScoringConfig
from ..cancellation import AbortSignal
from ..events import EventBus
from ..memory import ObservationalMemory
from ..messages import MessageList
from ..model_provider import ModelInvoker, ModelResponse, ToolSpec
from ..policy import PermissionState
from ..repos import WorkflowSnapshotRepository
from ..schemas.domain import (
    CompletionRunResult,
    FinishReason,
    RunStatus,
    SuspendedMarker,
    ToolCall,
    ToolCallRequest,
    _now_ms,
)
from ..scoring import Scorer
from ..tools import BUILTIN_TOOLS, Tool, ToolDispatcher
from ..tools.registry import ExtraTools


@dataclass(frozen=True)
class EngineDeps:
    """Dependency bundle for ``AgentEngine``.

    This object is typically constructed by ``build_engine`` (or application
    wiring code) and holds:

    - the model invoker (candidate models, retries, fallback)
    - the snapshot repository that makes runs resumable
    - the tool dispatcher (which owns the approval gate and hooks)
    - the event bus every component emits into
    - optional completion scorers and observational memory.
    """

    invoker: ModelInvoker
    snapshots: WorkflowSnapshotRepository
    dispatcher: ToolDispatcher
    bus: EventBus

    extra_tools: ExtraTools = None
    builtins: Sequence[Tool] = BUILTIN_TOOLS
    scorers: Sequence[Scorer] = ()
    memory: Optional[ObservationalMemory] = None
    system_prompt: Optional[str] = None
    loop: LoopConfig = field(default_factory=LoopConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)


@dataclass
class RunContext:
    """Run-scoped state owned by the engine for the duration of one invocation."""

    run_id: str
    workflow_name: str
    messages: MessageList
    permissions: PermissionState
    max_iterations: int
    original_task: str = ""
    resource_id: Optional[str] = None
    request_context: Dict[str, Any] = field(default_factory=dict)
    abort: AbortSignal = field(default_factory=AbortSignal)

    iteration: int = 0
    status: RunStatus = RunStatus.running
    finish_reason: Optional[FinishReason] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None

    tools: Dict[str, Tool] = field(default_factory=dict)
    response: Optional[ModelResponse] = None
    tool_results: List[ToolCall] = field(default_factory=list)
    suspended: Optional[SuspendedMarker] = None
    completion: Optional[CompletionRunResult] = None
    step_started_at: int = field(default_factory=_now_ms)

    @property
    def step_id(self) -> str:
        return f"iteration-{self.iteration}"

    @property
    def pending_calls(self) -> List[ToolCallRequest]:
        return list(self.response.tool_calls) if self.response is not None else []

    def finish(self, status: RunStatus, finish_reason: FinishReason, reason: Optional[str] = None) -> None:
        self.status = status
        self.finish_reason = finish_reason
        self.reason = reason

    def value(self) -> Dict[str, Any]:
        """The resumable part of the snapshot (``WorkflowRunState.value``)."""
        return {
            "messages": self.messages.dump(),
            "iteration": self.iteration,
            "permissions": self.permissions.dump(),
            "originalTask": self.original_task,
            "maxIterations": self.max_iterations,
        }

    @classmethod
    def from_value(
        cls,
        *,
        run_id: str,
        workflow_name: str,
        value: Mapping[str, Any],
        resource_id: Optional[str] = None,
        request_context: Optional[Dict[str, Any]] = None,
    ) -> "RunContext":
        return cls(
            run_id=run_id,
            workflow_name=workflow_name,
            messages=MessageList.load(value.get("messages") or []),
            permissions=PermissionState.load(value.get("permissions") or {}),
            max_iterations=int(value.get("maxIterations") or LoopConfig().max_iterations),
            original_task=str(value.get("originalTask") or ""),
            resource_id=resource_id,
            request_context=dict(request_context or {}),
            iteration=int(value.get("iteration") or 0),
        )


class _GraphState(TypedDict):
    """Mutable LangGraph state for a single engine invocation.

    Required keys:

    - ``run_id``: current run identifier; the engine resolves its ``RunContext``.

    Optional keys:

    - ``_next``: routing decision written by ``evaluate`` (continue/finish/suspend).
    - ``_finished``: set once a terminal condition is reached.
    """

    run_id: Required[str]
    _next: NotRequired[str]
    _finished: NotRequired[bool]


def tool_specs(tools: Iterable[Tool]) -> List[ToolSpec]:
    return [
        ToolSpec(
            name=t.name,
            description=getattr(t, "description", "") or "",
            parameters=dict(getattr(t, "parameters", None) or {}),
        )
        for t in tools
    ]
