from __future__ import annotations

from typing import Any, Dict, List

import pytest

from agentloop_ai.core.errors import ToolSuspended
from agentloop_ai.agent_core.tools import HookManager, HookOutcome, ToolHookEvent


def _event() -> ToolHookEvent:
    return ToolHookEvent(run_id="r1", tool_call_id="c1", tool_name="lookup")


@pytest.mark.asyncio
async def test_no_hooks_allows() -> None:
    outcome = await HookManager().run_pre(_event())
    assert outcome.allow is True


@pytest.mark.asyncio
async def test_veto_without_reason_gets_default_reason() -> None:
    hooks = HookManager()
    hooks.add_pre_hook(lambda e: HookOutcome(allow=False))
    outcome = await hooks.run_pre(_event())
    assert outcome == HookOutcome(allow=False, reason="Blocked by pre-tool hook")


@pytest.mark.asyncio
async def test_raising_pre_hook_vetoes() -> None:
    hooks = HookManager()

    async def broken(e: ToolHookEvent) -> None:
        raise RuntimeError("policy service down")

    hooks.add_pre_hook(broken)
    outcome = await hooks.run_pre(_event())
    assert outcome.allow is False
    assert outcome.reason == "Pre-hook failed: policy service down"


@pytest.mark.asyncio
async def test_post_hook_sees_result() -> None:
    seen: List[Dict[str, Any]] = []
    hooks = HookManager()
    hooks.add_post_hook(lambda e, outcome: seen.append(outcome))

    async def body() -> int:
        return 42

    assert await hooks.run_with_hooks(_event(), body) == 42
    assert seen == [{"result": 42}]


@pytest.mark.asyncio
async def test_post_hook_sees_error_and_original_error_is_reraised() -> None:
    seen: List[Dict[str, Any]] = []
    hooks = HookManager()
    hooks.add_post_hook(lambda e, outcome: seen.append(outcome))

    async def body() -> None:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await hooks.run_with_hooks(_event(), body)
    assert seen == [{"error": "'missing'", "threw": True}]


@pytest.mark.asyncio
async def test_post_hook_sees_suspension() -> None:
    seen: List[Dict[str, Any]] = []
    hooks = HookManager()
    hooks.add_post_hook(lambda e, outcome: seen.append(outcome))

    async def body() -> None:
        raise ToolSuspended({"question": "?"})

    with pytest.raises(ToolSuspended):
        await hooks.run_with_hooks(_event(), body)
    assert seen == [{"suspended": True, "payload": {"question": "?"}}]


@pytest.mark.asyncio
async def test_raising_post_hook_does_not_change_the_outcome() -> None:
    hooks = HookManager()

    def broken(e: ToolHookEvent, outcome: Dict[str, Any]) -> None:
        raise RuntimeError("audit sink down")

    hooks.add_post_hook(broken)

    async def body() -> str:
        return "ok"

    assert await hooks.run_with_hooks(_event(), body) == "ok"
