"""Run display state reduced from the event stream.

``RunDisplayState`` is owned by whoever renders a run (a terminal UI, a web
dashboard, a test). It is passed explicitly to ``apply_event`` and never kept
as module-level state, so several runs can be followed side by side.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .events import (
    ApprovalRequired,
    ApprovalResolved,
    IterationStart,
    OMActivation,
    OMBufferingEnd,
    OMBufferingFailed,
    OMBufferingStart,
    OMObservationEnd,
    OMObservationFailed,
    OMObservationStart,
    OMReflectionEnd,
    OMReflectionFailed,
    OMReflectionStart,
    RunAborted,
    RunCompleted,
    RunFailed,
    RunResumed,
    RunStarted,
    RunSuspended,
    ScorersResult,
    ToolEnd,
    ToolStart,
    ToolUpdate,
)
from .schemas.domain import CompletionRunResult


@dataclass
class ActiveTool:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    partial: Any = None


@dataclass
class BufferingState:
    cycle_id: str
    tokens: int
    status: str = "running"  # running | complete | failed
    error: Optional[str] = None


@dataclass
class OMProgress:
    status: str = "idle"  # idle | observing | reflecting
    cycle_id: Optional[str] = None
    observation_tokens: int = 0
    pre_reflection_tokens: int = 0
    buffered_tokens: Dict[str, int] = field(default_factory=dict)
    buffering: Dict[str, BufferingState] = field(default_factory=dict)
    retry_tokens: Dict[str, int] = field(default_factory=dict)
    generation_count: int = 0
    current_task: Optional[str] = None


@dataclass
class RunDisplayState:
    status: str = "idle"
    iteration: int = 0
    active_tools: Dict[str, ActiveTool] = field(default_factory=dict)
    pending_approval: Optional[Dict[str, Any]] = None
    last_completion: Optional[CompletionRunResult] = None
    reason: Optional[str] = None
    om: OMProgress = field(default_factory=OMProgress)


def apply_event(state: RunDisplayState, event: Any) -> RunDisplayState:
    """Fold one event into ``state`` in place and return it."""
    om = state.om
    match event:
        case RunStarted() | RunResumed():
            state.status = "running"
            state.reason = None
        case RunCompleted():
            state.status = "completed"
            state.reason = event.finish_reason
            state.active_tools.clear()
        case RunFailed():
            state.status = "failed"
            state.reason = event.reason
            state.active_tools.clear()
        case RunSuspended():
            state.status = "suspended"
        case RunAborted():
            state.status = "aborted"
            state.reason = event.reason
            state.pending_approval = None
            state.active_tools.clear()
        case IterationStart():
            state.iteration = event.iteration
        case ToolStart():
            state.active_tools[event.tool_call_id] = ActiveTool(name=event.tool_name, args=dict(event.args))
        case ToolUpdate():
            active = state.active_tools.get(event.tool_call_id)
            if active is not None:
                active.partial = event.partial
        case ToolEnd():
            state.active_tools.pop(event.tool_call_id, None)
        case ApprovalRequired():
            state.pending_approval = {
                "tool_call_id": event.tool_call_id,
                "tool_name": event.tool_name,
                "category": event.category,
            }
        case ApprovalResolved():
            if state.pending_approval and state.pending_approval["tool_call_id"] == event.tool_call_id:
                state.pending_approval = None
        case ScorersResult():
            state.last_completion = event.result
        case OMObservationStart():
            om.status = "observing"
            om.cycle_id = event.cycle_id
        case OMObservationEnd():
            om.status = "idle"
            om.cycle_id = None
            om.observation_tokens = event.observation_tokens
            om.current_task = event.current_task or om.current_task
        case OMReflectionStart():
            om.status = "reflecting"
            om.cycle_id = event.cycle_id
            om.pre_reflection_tokens = om.observation_tokens
            om.observation_tokens = event.tokens_to_reflect
        case OMReflectionEnd():
            om.status = "idle"
            om.cycle_id = None
            om.observation_tokens = event.compressed_tokens
        case OMObservationFailed() | OMReflectionFailed():
            om.status = "idle"
            om.cycle_id = None
        case OMBufferingStart():
            op = event.operation_type.value
            om.buffering[op] = BufferingState(cycle_id=event.cycle_id, tokens=event.tokens_to_buffer)
        case OMBufferingEnd():
            op = event.operation_type.value
            om.buffering[op] = BufferingState(
                cycle_id=event.cycle_id, tokens=event.tokens_buffered, status="complete"
            )
            om.buffered_tokens[op] = event.buffered_tokens
            om.retry_tokens.pop(op, None)
        case OMBufferingFailed():
            op = event.operation_type.value
            previous = om.buffering.get(op)
            tokens = previous.tokens if previous is not None else 0
            om.buffering[op] = BufferingState(cycle_id=event.cycle_id, tokens=tokens, status="failed", error=event.error)
            om.retry_tokens[op] = tokens
        case OMActivation():
            op = event.operation_type.value
            om.buffering.pop(op, None)
            om.buffered_tokens[op] = 0
            om.observation_tokens = event.observation_tokens
            om.generation_count = event.generation_count
        case _:
            pass
    return state
