"""Background observational-memory pipeline.

Bounds the token cost of long conversations without ever blocking the loop.

Design
------

- ``notify(run_id, messages)`` is synchronous and cheap: it records the latest
  message snapshot and makes sure the run's worker task is running. The loop
  calls it after every iteration and moves on.
- One worker task per run drains pending work, so observation and reflection
  cycles of a run are strictly sequential. Different runs proceed concurrently.
- A cycle moves ``buffering -> active -> activated`` or ends ``failed``:

  - **Observation buffering**: every ``buffer_tokens`` of new raw messages are
    pre-observed in the background and held as a chunk.
  - **Observation**: once unobserved raw tokens reach ``message_tokens``, the
    buffered chunks are activated; any remaining unobserved window at the
    threshold is observed directly. Activated observations replace the raw
    window in the prompt (see ``context_messages``).
  - **Reflection buffering**: past ``reflection_buffer_activation`` of
    ``observation_tokens``, the current observations are pre-compressed.
  - **Reflection**: once observation tokens reach ``observation_tokens``, the
    buffered reflection replaces the entries it covers (newer entries are kept);
    without one, the reflector runs directly.

- A failed cycle leaves cursors and buffers untouched, so the same window (and
  token count) is retried on the next notify. Nothing is discarded.
- Activations are merged into the run's snapshot under ``STEP_ID``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ...core.errors import SnapshotPersistenceError
from ..events import (
    EventBus,
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
)
from ..messages import Message, system_message
from ..repos.interfaces import WorkflowSnapshotRepository
from ..schemas.domain import (
    ObservationCycle,
    ObservationCycleStatus,
    OMOperationType,
    StepResult,
    WorkflowRunState,
    _now_ms,
    _utc_now,
)
from .agents import Observer, Reflector
from .models import BufferedChunk, BufferedReflection, ObservationalMemoryConfig, OMRecord
from .tokens import estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)

_FAILED = object()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class ObservationalMemory:
    STEP_ID = "observational-memory"

    def __init__(
        self,
        *,
        observer: Observer,
        reflector: Reflector,
        config: Optional[ObservationalMemoryConfig] = None,
        bus: Optional[EventBus] = None,
        snapshots: Optional[WorkflowSnapshotRepository] = None,
    ) -> None:
        self.observer = observer
        self.reflector = reflector
        self.config = config or ObservationalMemoryConfig()
        self.bus = bus or EventBus()
        self.snapshots = snapshots
        self._records: Dict[str, OMRecord] = {}
        self._latest: Dict[str, Tuple[Message, ...]] = {}
        self._workflows: Dict[str, str] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._dirty: Dict[str, bool] = {}

    # -- public API ----------------------------------------------------------

    def record(self, run_id: str) -> OMRecord:
        rec = self._records.get(run_id)
        if rec is None:
            rec = self._records[run_id] = OMRecord(run_id=run_id)
        return rec

    def notify(self, run_id: str, messages: Sequence[Message], *, workflow_name: Optional[str] = None) -> None:
        """Hand the pipeline the run's current history. Never blocks."""
        self._latest[run_id] = tuple(messages)
        if workflow_name is not None:
            self._workflows[run_id] = workflow_name
        worker = self._workers.get(run_id)
        if worker is None or worker.done():
            self._workers[run_id] = asyncio.create_task(self._drain(run_id), name=f"om-{run_id}")
        else:
            self._dirty[run_id] = True

    async def wait_idle(self, run_id: str) -> None:
        """Wait until the run's worker has drained all pending work."""
        while True:
            worker = self._workers.get(run_id)
            if worker is None or worker.done():
                return
            await asyncio.wait({worker})

    async def cancel(self, run_id: str) -> None:
        """Cancel the run's in-flight cycle; it is recorded failed with reason "aborted"."""
        worker = self._workers.get(run_id)
        if worker is None or worker.done():
            return
        worker.cancel()
        await asyncio.wait({worker})

    def release(self, run_id: str) -> None:
        """Drop the run's in-memory state once its worker (if any) has finished."""
        worker = self._workers.get(run_id)
        if worker is not None and not worker.done():
            worker.add_done_callback(lambda _: self._forget(run_id))
            return
        self._forget(run_id)

    def restore(self, run_id: str, snapshot: WorkflowRunState, *, workflow_name: str) -> None:
        """Rehydrate a run's record from its persisted snapshot."""
        self._workflows[run_id] = workflow_name
        step = snapshot.step_result(self.STEP_ID)
        if step is not None and isinstance(step.output, dict):
            self._records[run_id] = OMRecord.load(run_id, step.output)

    def pending_retry_tokens(self, run_id: str, operation_type: OMOperationType) -> int:
        rec = self._records.get(run_id)
        return rec.retry_tokens.get(operation_type, 0) if rec is not None else 0

    def render_observations(self, rec: OMRecord) -> str:
        parts = ["<observations>", *rec.observations, "</observations>"]
        if rec.current_task:
            parts.append(f"<current-task>\n{rec.current_task}\n</current-task>")
        if rec.suggested_response:
            parts.append(f"<suggested-response>\n{rec.suggested_response}\n</suggested-response>")
        return "\n".join(parts)

    def context_messages(self, run_id: str, messages: Sequence[Message]) -> List[Message]:
        """Activated observations (as one system message) plus the unobserved window."""
        rec = self._records.get(run_id)
        if rec is None or not rec.observations:
            return list(messages)
        return [system_message(self.render_observations(rec)), *messages[rec.observed_cursor :]]

    # -- worker --------------------------------------------------------------

    def _forget(self, run_id: str) -> None:
        for store in (self._records, self._latest, self._workflows, self._workers, self._dirty):
            store.pop(run_id, None)

    def _emit(self, event: Any) -> None:
        self.bus.emit(event)

    async def _drain(self, run_id: str) -> None:
        while True:
            self._dirty[run_id] = False
            try:
                await self._process(run_id)
            except Exception:
                logger.exception(f"Observational memory processing failed for run {run_id}")
            if not self._dirty.get(run_id):
                return

    async def _process(self, run_id: str) -> None:
        cfg = self.config
        rec = self.record(run_id)
        messages = self._latest.get(run_id, ())

        unobserved = estimate_message_tokens(messages[rec.observed_cursor :])
        if unobserved >= cfg.message_tokens:
            if rec.chunks:
                await self._activate_observations(rec)
                unobserved = estimate_message_tokens(messages[rec.observed_cursor :])
            if unobserved >= cfg.message_tokens:
                await self._observe(rec, messages)
        elif cfg.effective_buffer_tokens > 0:
            start = max(rec.buffer_cursor, rec.observed_cursor)
            if estimate_message_tokens(messages[start:]) >= cfg.effective_buffer_tokens:
                await self._buffer_observation(rec, messages, start)

        observation_tokens = rec.observation_tokens
        if observation_tokens >= cfg.observation_tokens:
            if rec.reflection is not None:
                await self._activate_reflection(rec)
            else:
                await self._reflect(rec)
        elif (
            cfg.reflection_buffer_activation > 0
            and rec.reflection is None
            and observation_tokens >= cfg.observation_tokens * cfg.reflection_buffer_activation
        ):
            await self._buffer_reflection(rec)

    async def _attempt(
        self,
        rec: OMRecord,
        cycle: ObservationCycle,
        call: Callable[[], Awaitable[Any]],
        failed_event: Callable[[str, float], Any],
    ) -> Any:
        rec.active_cycle = cycle
        started = time.perf_counter()
        try:
            return await call()
        except asyncio.CancelledError:
            self._mark_failed(cycle, "aborted")
            self._emit(failed_event("aborted", _elapsed_ms(started)))
            raise
        except Exception as e:
            logger.warning(f"{cycle.operation_type.value} cycle {cycle.cycle_id} failed for run {rec.run_id}: {e}")
            self._mark_failed(cycle, str(e))
            self._emit(failed_event(str(e), _elapsed_ms(started)))
            return _FAILED
        finally:
            rec.active_cycle = None

    @staticmethod
    def _mark_failed(cycle: ObservationCycle, error: str) -> None:
        cycle.status = ObservationCycleStatus.failed
        cycle.error = error
        cycle.ended_at = _utc_now()

    @staticmethod
    def _mark_activated(cycle: ObservationCycle) -> None:
        cycle.status = ObservationCycleStatus.activated
        cycle.ended_at = _utc_now()

    def _existing(self, rec: OMRecord) -> str:
        return "\n".join(rec.observations)

    async def _buffer_observation(self, rec: OMRecord, messages: Sequence[Message], start: int) -> None:
        end = len(messages)
        window = messages[start:end]
        tokens = estimate_message_tokens(window)
        op = OMOperationType.observation
        cycle = ObservationCycle(operation_type=op, status=ObservationCycleStatus.buffering, tokens_involved=tokens)
        self._emit(OMBufferingStart(run_id=rec.run_id, cycle_id=cycle.cycle_id, operation_type=op, tokens_to_buffer=tokens))

        result = await self._attempt(
            rec,
            cycle,
            lambda: self.observer.observe(window, existing_observations=self._existing(rec)),
            lambda error, _ms: OMBufferingFailed(
                run_id=rec.run_id, cycle_id=cycle.cycle_id, operation_type=op, error=error
            ),
        )
        if result is _FAILED:
            rec.retry_tokens[op] = tokens
            return

        cycle.observations = result.observations
        rec.chunks.append(BufferedChunk(cycle=cycle, start=start, end=end, result=result))
        rec.buffer_cursor = end
        rec.retry_tokens.pop(op, None)
        self._emit(
            OMBufferingEnd(
                run_id=rec.run_id,
                cycle_id=cycle.cycle_id,
                operation_type=op,
                tokens_buffered=tokens,
                buffered_tokens=rec.buffered_tokens,
                observations=result.observations,
            )
        )

    async def _activate_observations(self, rec: OMRecord) -> None:
        chunks, rec.chunks = rec.chunks, []
        for chunk in chunks:
            rec.observations.append(chunk.result.observations)
            rec.current_task = chunk.result.current_task or rec.current_task
            rec.suggested_response = chunk.result.suggested_response or rec.suggested_response
            self._mark_activated(chunk.cycle)
        first, last = chunks[0], chunks[-1]
        rec.observed_cursor = last.end
        rec.generation_count += 1
        self._emit(
            OMActivation(
                run_id=rec.run_id,
                cycle_id=last.cycle.cycle_id,
                operation_type=OMOperationType.observation,
                chunks_activated=len(chunks),
                tokens_activated=sum(c.cycle.tokens_involved for c in chunks),
                observation_tokens=rec.observation_tokens,
                messages_activated=last.end - first.start,
                generation_count=rec.generation_count,
            )
        )
        await self._persist(rec)

    async def _observe(self, rec: OMRecord, messages: Sequence[Message]) -> None:
        start, end = rec.observed_cursor, len(messages)
        window = messages[start:end]
        tokens = estimate_message_tokens(window)
        cycle = ObservationCycle(
            operation_type=OMOperationType.observation, status=ObservationCycleStatus.active, tokens_involved=tokens
        )
        self._emit(OMObservationStart(run_id=rec.run_id, cycle_id=cycle.cycle_id, tokens_to_observe=tokens))
        started = time.perf_counter()

        result = await self._attempt(
            rec,
            cycle,
            lambda: self.observer.observe(window, existing_observations=self._existing(rec)),
            lambda error, ms: OMObservationFailed(run_id=rec.run_id, cycle_id=cycle.cycle_id, error=error, duration_ms=ms),
        )
        if result is _FAILED:
            return

        rec.observations.append(result.observations)
        rec.observed_cursor = end
        rec.buffer_cursor = max(rec.buffer_cursor, end)
        rec.current_task = result.current_task or rec.current_task
        rec.suggested_response = result.suggested_response or rec.suggested_response
        rec.generation_count += 1
        cycle.observations = result.observations
        self._mark_activated(cycle)
        self._emit(
            OMObservationEnd(
                run_id=rec.run_id,
                cycle_id=cycle.cycle_id,
                duration_ms=_elapsed_ms(started),
                tokens_observed=tokens,
                observation_tokens=rec.observation_tokens,
                observations=result.observations,
                current_task=result.current_task,
                suggested_response=result.suggested_response,
            )
        )
        await self._persist(rec)

    async def _buffer_reflection(self, rec: OMRecord) -> None:
        covers = len(rec.observations)
        text = self._existing(rec)
        tokens = rec.observation_tokens
        op = OMOperationType.reflection
        cycle = ObservationCycle(operation_type=op, status=ObservationCycleStatus.buffering, tokens_involved=tokens)
        self._emit(OMBufferingStart(run_id=rec.run_id, cycle_id=cycle.cycle_id, operation_type=op, tokens_to_buffer=tokens))

        result = await self._attempt(
            rec,
            cycle,
            lambda: self.reflector.reflect(text),
            lambda error, _ms: OMBufferingFailed(
                run_id=rec.run_id, cycle_id=cycle.cycle_id, operation_type=op, error=error
            ),
        )
        if result is _FAILED:
            rec.retry_tokens[op] = tokens
            return

        cycle.observations = result.observations
        rec.reflection = BufferedReflection(cycle=cycle, covers=covers, observations=result.observations)
        rec.retry_tokens.pop(op, None)
        self._emit(
            OMBufferingEnd(
                run_id=rec.run_id,
                cycle_id=cycle.cycle_id,
                operation_type=op,
                tokens_buffered=tokens,
                buffered_tokens=estimate_tokens(result.observations),
                observations=result.observations,
            )
        )

    async def _activate_reflection(self, rec: OMRecord) -> None:
        buffered, rec.reflection = rec.reflection, None
        rec.observations = [buffered.observations, *rec.observations[buffered.covers :]]
        rec.generation_count += 1
        self._mark_activated(buffered.cycle)
        self._emit(
            OMActivation(
                run_id=rec.run_id,
                cycle_id=buffered.cycle.cycle_id,
                operation_type=OMOperationType.reflection,
                chunks_activated=1,
                tokens_activated=buffered.cycle.tokens_involved,
                observation_tokens=rec.observation_tokens,
                messages_activated=0,
                generation_count=rec.generation_count,
            )
        )
        await self._persist(rec)

    async def _reflect(self, rec: OMRecord) -> None:
        covers = len(rec.observations)
        text = self._existing(rec)
        tokens = rec.observation_tokens
        cycle = ObservationCycle(
            operation_type=OMOperationType.reflection, status=ObservationCycleStatus.active, tokens_involved=tokens
        )
        self._emit(OMReflectionStart(run_id=rec.run_id, cycle_id=cycle.cycle_id, tokens_to_reflect=tokens))
        started = time.perf_counter()

        result = await self._attempt(
            rec,
            cycle,
            lambda: self.reflector.reflect(text),
            lambda error, ms: OMReflectionFailed(run_id=rec.run_id, cycle_id=cycle.cycle_id, error=error, duration_ms=ms),
        )
        if result is _FAILED:
            return

        rec.observations = [result.observations, *rec.observations[covers:]]
        rec.generation_count += 1
        cycle.observations = result.observations
        self._mark_activated(cycle)
        self._emit(
            OMReflectionEnd(
                run_id=rec.run_id,
                cycle_id=cycle.cycle_id,
                duration_ms=_elapsed_ms(started),
                compressed_tokens=rec.observation_tokens,
                observations=result.observations,
            )
        )
        await self._persist(rec)

    async def _persist(self, rec: OMRecord) -> None:
        workflow_name = self._workflows.get(rec.run_id)
        if self.snapshots is None or workflow_name is None:
            return
        try:
            await self.snapshots.update_workflow_results(
                workflow_name=workflow_name,
                run_id=rec.run_id,
                step_id=self.STEP_ID,
                result=StepResult(output=rec.dump(), ended_at=_now_ms()),
            )
        except SnapshotPersistenceError as e:
            logger.error(f"Could not persist observational memory for run {rec.run_id}: {e}")
