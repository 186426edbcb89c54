from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from agentloop_ai.agent_core.events import (
    EVENT_ADAPTER,
    EventBus,
    IterationStart,
    OMBufferingFailed,
    RunCompleted,
    RunStarted,
    ToolEnd,
)
from agentloop_ai.agent_core.schemas.domain import OMOperationType


def test_emit_stamps_increasing_seq() -> None:
    bus = EventBus()
    first = bus.emit(RunStarted(run_id="r1", workflow_name="wf", max_iterations=3))
    second = bus.emit(IterationStart(run_id="r1", iteration=1))

    assert (first.seq, second.seq) == (1, 2)
    assert [e.type for e in bus.history()] == ["run.started", "iteration.start"]


def test_failing_subscriber_does_not_stop_delivery() -> None:
    bus = EventBus()
    seen: List[Any] = []

    def broken(event: Any) -> None:
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.emit(IterationStart(run_id="r1", iteration=1))

    assert len(seen) == 1


def test_unsubscribe() -> None:
    bus = EventBus()
    seen: List[Any] = []
    unsubscribe = bus.subscribe(seen.append)
    bus.emit(IterationStart(run_id="r1", iteration=1))
    unsubscribe()
    unsubscribe()
    bus.emit(IterationStart(run_id="r1", iteration=2))

    assert [e.iteration for e in seen] == [1]


def test_history_filters_by_run() -> None:
    bus = EventBus()
    bus.emit(IterationStart(run_id="r1", iteration=1))
    bus.emit(IterationStart(run_id="r2", iteration=1))

    assert [e.run_id for e in bus.history("r2")] == ["r2"]


@pytest.mark.asyncio
async def test_stream_yields_in_emit_order_until_closed() -> None:
    bus = EventBus()
    received: List[int] = []

    async def consume() -> None:
        async for event in bus.stream():
            received.append(event.seq)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    for i in range(3):
        bus.emit(IterationStart(run_id="r1", iteration=i))
    bus.close()
    await asyncio.wait_for(consumer, 1)

    assert received == [1, 2, 3]


def test_event_adapter_revalidates_dumped_events() -> None:
    events = [
        RunCompleted(run_id="r1", finish_reason="scorers_passed", iterations=2, output="done"),
        ToolEnd(run_id="r1", tool_call_id="c1", tool_name="view", result={"text": "x"}, is_error=False),
        OMBufferingFailed(run_id="r1", cycle_id="cy", operation_type=OMOperationType.observation, error="down"),
    ]
    for event in events:
        restored = EVENT_ADAPTER.validate_python(event.model_dump(mode="json"))
        assert type(restored) is type(event)
        assert restored == event


@pytest.mark.asyncio
async def test_stream_subscribes_before_iteration_starts() -> None:
    bus = EventBus()
    stream = bus.stream()
    bus.emit(IterationStart(run_id="r1", iteration=1))
    bus.emit(IterationStart(run_id="r1", iteration=2))
    bus.close()

    assert [event.iteration async for event in stream] == [1, 2]


@pytest.mark.asyncio
async def test_closing_a_stream_unsubscribes_it() -> None:
    bus = EventBus()
    async with bus.stream() as stream:
        bus.emit(IterationStart(run_id="r1", iteration=1))
        assert (await stream.__anext__()).iteration == 1

    bus.emit(IterationStart(run_id="r1", iteration=2))

    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert bus._queues == []
