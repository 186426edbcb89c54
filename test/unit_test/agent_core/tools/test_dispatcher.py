from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from agentloop_ai.agent_core.cancellation import AbortSignal
from agentloop_ai.agent_core.events import EventBus
from agentloop_ai.agent_core.policy import ApprovalGate, PermissionState
from agentloop_ai.agent_core.schemas.domain import (
    ApprovalDecision,
    PermissionPolicy,
    ToolCallRequest,
    ToolCategory,
)
from agentloop_ai.agent_core.tools import FunctionTool, HookManager, HookOutcome, ToolDispatcher, ToolResult
from agentloop_ai.agent_core.tools.dispatcher import ABORTED_ERROR


class _CountingTool:
    def __init__(self, name: str, category: ToolCategory = ToolCategory.read, *, result: Any = "ok") -> None:
        self.name = name
        self.description = f"{name} tool"
        self.category = category
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, ctx, *, args: Dict[str, Any]) -> Any:
        self.calls.append(dict(args))
        return self.result


class _RaisingTool(_CountingTool):
    async def execute(self, ctx, *, args: Dict[str, Any]) -> Any:
        self.calls.append(dict(args))
        raise ValueError("boom")


async def _wait_for_pending(gate: ApprovalGate, count: int = 1):
    for _ in range(200):
        pending = gate.pending()
        if len(pending) >= count:
            return pending
        await asyncio.sleep(0)
    raise AssertionError("approval was never requested")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def gate() -> ApprovalGate:
    return ApprovalGate()


@pytest.fixture
def dispatcher(gate: ApprovalGate, bus: EventBus) -> ToolDispatcher:
    return ToolDispatcher(approvals=gate, bus=bus, concurrency_limit=4)


@pytest.mark.asyncio
async def test_allowed_call_runs_and_keeps_its_id(dispatcher: ToolDispatcher, bus: EventBus) -> None:
    t = _CountingTool("lookup", result={"value": 1})
    call = ToolCallRequest(id="call-1", name="lookup", args={"q": "x"})

    [record] = await dispatcher.execute([call], {"lookup": t}, PermissionState(), run_id="r1")

    assert record.id == "call-1"
    assert record.result == {"value": 1}
    assert record.is_error is False
    assert t.calls == [{"q": "x"}]
    assert [e.type for e in bus.history("r1")] == ["tool.start", "tool.end"]


@pytest.mark.asyncio
async def test_deny_never_invokes_the_body(dispatcher: ToolDispatcher) -> None:
    t = _CountingTool("rm", ToolCategory.execute)
    perms = PermissionState()
    perms.set_tool_policy("rm", PermissionPolicy.deny)

    [record] = await dispatcher.execute([ToolCallRequest(name="rm")], {"rm": t}, perms, run_id="r1")

    assert t.calls == []
    assert record.is_error is True
    assert record.result == {"error": "Tool 'rm' is denied by permission policy"}


@pytest.mark.asyncio
async def test_declined_ask_never_invokes_the_body(dispatcher: ToolDispatcher, gate: ApprovalGate, bus: EventBus) -> None:
    t = _CountingTool("edit", ToolCategory.edit)
    call = ToolCallRequest(id="call-1", name="edit")

    task = asyncio.create_task(dispatcher.execute([call], {"edit": t}, PermissionState(), run_id="r1"))
    [pending] = await _wait_for_pending(gate)
    assert pending.tool_call_id == "call-1"
    gate.respond("call-1", ApprovalDecision.decline)
    [record] = await task

    assert t.calls == []
    assert record.result == {"error": "Tool call was declined by the user"}
    types = [e.type for e in bus.history("r1")]
    assert types[:2] == ["approval.required", "approval.resolved"]
    assert "tool.start" not in types


@pytest.mark.asyncio
async def test_approved_ask_runs_the_body(dispatcher: ToolDispatcher, gate: ApprovalGate) -> None:
    t = _CountingTool("edit", ToolCategory.edit)
    task = asyncio.create_task(
        dispatcher.execute([ToolCallRequest(id="c1", name="edit")], {"edit": t}, PermissionState(), run_id="r1")
    )
    await _wait_for_pending(gate)
    gate.respond("c1", "approve")
    [record] = await task

    assert record.result == "ok"
    assert len(t.calls) == 1


@pytest.mark.asyncio
async def test_always_allow_category_grants_the_category_for_the_session(
    dispatcher: ToolDispatcher, gate: ApprovalGate
) -> None:
    t = _CountingTool("edit", ToolCategory.edit)
    perms = PermissionState()
    task = asyncio.create_task(
        dispatcher.execute([ToolCallRequest(id="c1", name="edit")], {"edit": t}, perms, run_id="r1")
    )
    await _wait_for_pending(gate)
    gate.respond("c1", ApprovalDecision.always_allow_category)
    await task

    assert ToolCategory.edit in perms.granted_categories
    [again] = await dispatcher.execute([ToolCallRequest(name="edit")], {"edit": t}, perms, run_id="r1")
    assert again.is_error is False
    assert len(t.calls) == 2


@pytest.mark.asyncio
async def test_yolo_flips_remaining_policy_to_allow(dispatcher: ToolDispatcher, gate: ApprovalGate) -> None:
    edit = _CountingTool("edit", ToolCategory.edit)
    run = _CountingTool("run", ToolCategory.execute)
    perms = PermissionState()
    calls = [ToolCallRequest(id="c1", name="edit"), ToolCallRequest(id="c2", name="run")]

    task = asyncio.create_task(dispatcher.execute(calls, {"edit": edit, "run": run}, perms, run_id="r1"))
    await _wait_for_pending(gate, 2)
    gate.respond("c1", ApprovalDecision.yolo)
    records = await task

    assert perms.yolo is True
    assert [r.is_error for r in records] == [False, False]
    assert len(edit.calls) == 1 and len(run.calls) == 1


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_in_flight_bodies_and_queues_fifo(dispatcher: ToolDispatcher) -> None:
    in_flight = 0
    peak = 0
    started: List[str] = []

    async def slow(ctx, label: str) -> str:
        nonlocal in_flight, peak
        started.append(label)
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return label

    t = FunctionTool(name="slow", fn=slow, category=ToolCategory.read)
    calls = [ToolCallRequest(id=f"c{i}", name="slow", args={"label": f"l{i}"}) for i in range(6)]

    records = await dispatcher.execute(calls, {"slow": t}, PermissionState(), 2, run_id="r1")

    assert peak == 2
    assert started == [f"l{i}" for i in range(6)]
    assert [(r.id, r.result) for r in records] == [(f"c{i}", f"l{i}") for i in range(6)]


@pytest.mark.asyncio
async def test_invalid_concurrency_limit_is_rejected(gate: ApprovalGate) -> None:
    with pytest.raises(ValueError):
        ToolDispatcher(approvals=gate, concurrency_limit=0)


@pytest.mark.asyncio
async def test_pre_hook_veto_never_invokes_the_body(gate: ApprovalGate) -> None:
    hooks = HookManager()
    hooks.add_pre_hook(lambda event: HookOutcome(allow=False, reason="read-only mode"))
    dispatcher = ToolDispatcher(approvals=gate, hooks=hooks)
    t = _CountingTool("lookup")

    [record] = await dispatcher.execute([ToolCallRequest(name="lookup")], {"lookup": t}, PermissionState(), run_id="r1")

    assert t.calls == []
    assert record.result == {"error": "read-only mode"}
    assert record.is_error is True


@pytest.mark.asyncio
async def test_post_hook_observes_a_throwing_body(gate: ApprovalGate) -> None:
    seen: List[Dict[str, Any]] = []
    hooks = HookManager()
    hooks.add_post_hook(lambda event, outcome: seen.append(outcome))
    dispatcher = ToolDispatcher(approvals=gate, hooks=hooks)
    t = _RaisingTool("explode")

    [record] = await dispatcher.execute(
        [ToolCallRequest(name="explode")], {"explode": t}, PermissionState(), run_id="r1"
    )

    assert seen == [{"error": "boom", "threw": True}]
    assert record.is_error is True
    assert record.result == {"error": "boom"}


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_as_error(dispatcher: ToolDispatcher) -> None:
    [record] = await dispatcher.execute([ToolCallRequest(name="nope")], {}, PermissionState(), run_id="r1")
    assert record.is_error is True
    assert record.result == {"error": "Unknown tool 'nope'"}


@pytest.mark.asyncio
async def test_tool_result_is_unwrapped(dispatcher: ToolDispatcher) -> None:
    t = _CountingTool("check", result=ToolResult(ok=False, output={"error": "bad input"}))
    [record] = await dispatcher.execute([ToolCallRequest(name="check")], {"check": t}, PermissionState(), run_id="r1")
    assert record.is_error is True
    assert record.result == {"error": "bad input"}


@pytest.mark.asyncio
async def test_suspending_tool_yields_a_suspended_record(dispatcher: ToolDispatcher) -> None:
    def ask(ctx, question: str) -> None:
        ctx.suspend({"question": question})

    t = FunctionTool(name="ask", fn=ask, category=ToolCategory.read)
    [record] = await dispatcher.execute(
        [ToolCallRequest(id="c1", name="ask", args={"question": "why?"})], {"ask": t}, PermissionState(), run_id="r1"
    )

    assert record.suspended is True
    assert record.suspend_payload == {"question": "why?"}
    assert record.id == "c1"


@pytest.mark.asyncio
async def test_progress_updates_are_emitted(dispatcher: ToolDispatcher, bus: EventBus) -> None:
    async def stream(ctx) -> str:
        ctx.update("half")
        ctx.update("done")
        return "finished"

    t = FunctionTool(name="stream", fn=stream, category=ToolCategory.read)
    await dispatcher.execute([ToolCallRequest(name="stream")], {"stream": t}, PermissionState(), run_id="r1")

    updates = [e.partial for e in bus.history("r1") if e.type == "tool.update"]
    assert updates == ["half", "done"]


@pytest.mark.asyncio
async def test_abort_during_ask_declines_and_skips_queued_calls(
    dispatcher: ToolDispatcher, gate: ApprovalGate
) -> None:
    edit = _CountingTool("edit", ToolCategory.edit)
    abort = AbortSignal()

    task = asyncio.create_task(
        dispatcher.execute(
            [ToolCallRequest(id="c1", name="edit")], {"edit": edit}, PermissionState(), run_id="r1", abort=abort
        )
    )
    await _wait_for_pending(gate)
    abort.abort("user cancelled")
    gate.decline_all("r1")
    [record] = await task

    assert edit.calls == []
    assert record.result == {"error": "Tool call was declined because the run was aborted"}

    read = _CountingTool("read")
    [queued] = await dispatcher.execute(
        [ToolCallRequest(name="read")], {"read": read}, PermissionState(), run_id="r1", abort=abort
    )
    assert read.calls == []
    assert queued.result == {"error": ABORTED_ERROR}
