"""Ordered event stream of loop state transitions.

Every state transition the loop, the tool dispatcher or the observational-memory
pipeline goes through is published as one variant of the closed ``AgentEvent``
union. Observers consume the stream; nothing they do feeds back into decision
logic.

Design
------

- Each variant is a pydantic model with a literal ``type`` discriminator, so a
  consumer can ``match`` on the class and a persisted event can be revalidated
  through ``EVENT_ADAPTER``.
- ``EventBus.emit`` stamps a per-bus monotonically increasing ``seq`` and
  delivers synchronously to callbacks, then to every ``stream()`` queue, in emit
  order.
- A subscriber that raises is logged and skipped.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from datetime import datetime
from typing import Annotated, Any, Callable, Deque, Dict, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter

from .schemas.base import BaseSchema
from .schemas.domain import CompletionRunResult, OMOperationType, _utc_now

logger = logging.getLogger(__name__)


class _Event(BaseSchema):
    run_id: Optional[str] = None
    seq: int = 0
    created_at: datetime = Field(default_factory=_utc_now)


# -- run lifecycle -----------------------------------------------------------


class RunStarted(_Event):
    type: Literal["run.started"] = "run.started"
    workflow_name: str
    max_iterations: int


class RunResumed(_Event):
    type: Literal["run.resumed"] = "run.resumed"
    step_id: Optional[str] = None


class RunCompleted(_Event):
    type: Literal["run.completed"] = "run.completed"
    finish_reason: str
    iterations: int
    output: Optional[str] = None


class RunFailed(_Event):
    type: Literal["run.failed"] = "run.failed"
    reason: str
    error_kind: Optional[str] = None


class RunSuspended(_Event):
    type: Literal["run.suspended"] = "run.suspended"
    step_id: str
    tool_call_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class RunAborted(_Event):
    type: Literal["run.aborted"] = "run.aborted"
    reason: Optional[str] = None


class IterationStart(_Event):
    type: Literal["iteration.start"] = "iteration.start"
    iteration: int


class IterationEnd(_Event):
    type: Literal["iteration.end"] = "iteration.end"
    iteration: int
    tool_calls: int = 0


# -- model -------------------------------------------------------------------


class ModelRetry(_Event):
    type: Literal["model.retry"] = "model.retry"
    model_id: str
    attempt: int
    delay: float
    error_kind: str


class ModelFallback(_Event):
    type: Literal["model.fallback"] = "model.fallback"
    from_model: str
    to_model: Optional[str] = None
    error_kind: str


class MessageUpdate(_Event):
    type: Literal["message.update"] = "message.update"
    text_delta: str = ""
    thinking_delta: str = ""


# -- tools and approvals -----------------------------------------------------


class ToolStart(_Event):
    type: Literal["tool.start"] = "tool.start"
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolUpdate(_Event):
    type: Literal["tool.update"] = "tool.update"
    tool_call_id: str
    tool_name: str
    partial: Any = None


class ToolEnd(_Event):
    type: Literal["tool.end"] = "tool.end"
    tool_call_id: str
    tool_name: str
    result: Any = None
    is_error: bool = False


class ApprovalRequired(_Event):
    type: Literal["approval.required"] = "approval.required"
    tool_call_id: str
    tool_name: str
    category: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)


class ApprovalResolved(_Event):
    type: Literal["approval.resolved"] = "approval.resolved"
    tool_call_id: str
    decision: str


class ScorersResult(_Event):
    type: Literal["scorers.result"] = "scorers.result"
    iteration: int
    result: CompletionRunResult


# -- observational memory ----------------------------------------------------


class OMObservationStart(_Event):
    type: Literal["om.observation_start"] = "om.observation_start"
    cycle_id: str
    operation_type: OMOperationType = OMOperationType.observation
    tokens_to_observe: int


class OMObservationEnd(_Event):
    type: Literal["om.observation_end"] = "om.observation_end"
    cycle_id: str
    duration_ms: float
    tokens_observed: int
    observation_tokens: int
    observations: Optional[str] = None
    current_task: Optional[str] = None
    suggested_response: Optional[str] = None


class OMObservationFailed(_Event):
    type: Literal["om.observation_failed"] = "om.observation_failed"
    cycle_id: str
    error: str
    duration_ms: float


class OMReflectionStart(_Event):
    type: Literal["om.reflection_start"] = "om.reflection_start"
    cycle_id: str
    tokens_to_reflect: int


class OMReflectionEnd(_Event):
    type: Literal["om.reflection_end"] = "om.reflection_end"
    cycle_id: str
    duration_ms: float
    compressed_tokens: int
    observations: Optional[str] = None


class OMReflectionFailed(_Event):
    type: Literal["om.reflection_failed"] = "om.reflection_failed"
    cycle_id: str
    error: str
    duration_ms: float


class OMBufferingStart(_Event):
    type: Literal["om.buffering_start"] = "om.buffering_start"
    cycle_id: str
    operation_type: OMOperationType
    tokens_to_buffer: int


class OMBufferingEnd(_Event):
    type: Literal["om.buffering_end"] = "om.buffering_end"
    cycle_id: str
    operation_type: OMOperationType
    tokens_buffered: int
    buffered_tokens: int
    observations: Optional[str] = None


class OMBufferingFailed(_Event):
    type: Literal["om.buffering_failed"] = "om.buffering_failed"
    cycle_id: str
    operation_type: OMOperationType
    error: str


class OMActivation(_Event):
    type: Literal["om.activation"] = "om.activation"
    cycle_id: str
    operation_type: OMOperationType
    chunks_activated: int
    tokens_activated: int
    observation_tokens: int
    messages_activated: int
    generation_count: int


class SnapshotPersisted(_Event):
    type: Literal["snapshot.persisted"] = "snapshot.persisted"
    step_id: str
    status: str


AgentEvent = Annotated[
    Union[
        RunStarted,
        RunResumed,
        RunCompleted,
        RunFailed,
        RunSuspended,
        RunAborted,
        IterationStart,
        IterationEnd,
        ModelRetry,
        ModelFallback,
        MessageUpdate,
        ToolStart,
        ToolUpdate,
        ToolEnd,
        ApprovalRequired,
        ApprovalResolved,
        ScorersResult,
        OMObservationStart,
        OMObservationEnd,
        OMObservationFailed,
        OMReflectionStart,
        OMReflectionEnd,
        OMReflectionFailed,
        OMBufferingStart,
        OMBufferingEnd,
        OMBufferingFailed,
        OMActivation,
        SnapshotPersisted,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(AgentEvent)

EventCallback = Callable[[Any], None]

_CLOSED = object()


class EventStream:
    """Async iterator over one ``EventBus`` subscription.

    Iteration ends at ``EventBus.close()``. ``aclose()`` (or leaving an
    ``async with`` block) unsubscribes early.
    """

    def __init__(self, bus: "EventBus", queue: asyncio.Queue) -> None:
        self._bus = bus
        self._queue = queue
        self._done = False

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Any:
        if self._done:
            raise StopAsyncIteration
        try:
            item = await self._queue.get()
        except asyncio.CancelledError:
            await self.aclose()
            raise
        if item is _CLOSED:
            await self.aclose()
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        self._done = True
        self._bus._detach(self._queue)

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class EventBus:
    """In-process, ordered fan-out of ``AgentEvent`` values."""

    def __init__(self, history_limit: int = 10_000) -> None:
        self._seq = itertools.count(1)
        self._history: Deque[Any] = deque(maxlen=history_limit)
        self._callbacks: List[EventCallback] = []
        self._queues: List[asyncio.Queue] = []

    def emit(self, event: Any) -> Any:
        stamped = event.model_copy(update={"seq": next(self._seq)})
        self._history.append(stamped)
        for callback in list(self._callbacks):
            try:
                callback(stamped)
            except Exception:
                logger.exception(f"Event subscriber failed on {stamped.type}")
        for queue in list(self._queues):
            queue.put_nowait(stamped)
        return stamped

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a synchronous callback; returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    def stream(self) -> "EventStream":
        """Subscribe now and iterate every later event until ``close()``.

        The subscription starts when ``stream()`` is called, not on the first
        ``__anext__``, so events emitted in between are not lost.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return EventStream(self, queue)

    def _detach(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def close(self) -> None:
        for queue in list(self._queues):
            queue.put_nowait(_CLOSED)

    def history(self, run_id: Optional[str] = None) -> List[Any]:
        if run_id is None:
            return list(self._history)
        return [e for e in self._history if e.run_id == run_id]
