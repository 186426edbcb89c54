"""Pre/post tool-execution hooks.

- A pre-hook sees every otherwise-allowed call before its body runs and may veto
  it with a reason. A pre-hook that raises counts as a veto.
- A post-hook always observes the outcome: ``{"result": ...}`` on success, or
  ``{"error": message, "threw": True}`` when the body raised. In the latter case
  the original exception is re-raised after the post-hooks ran. A post-hook that
  raises is logged and does not change the outcome.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ...core.errors import ToolSuspended
from ..schemas.domain import ToolCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolHookEvent:
    run_id: str
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any] = field(default_factory=dict)
    category: Optional[ToolCategory] = None


@dataclass(frozen=True)
class HookOutcome:
    allow: bool = True
    reason: Optional[str] = None


PreHook = Callable[[ToolHookEvent], Union[Optional[HookOutcome], Awaitable[Optional[HookOutcome]]]]
PostHook = Callable[[ToolHookEvent, Dict[str, Any]], Union[None, Awaitable[None]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class HookManager:
    def __init__(self) -> None:
        self._pre: List[PreHook] = []
        self._post: List[PostHook] = []

    def add_pre_hook(self, hook: PreHook) -> None:
        self._pre.append(hook)

    def add_post_hook(self, hook: PostHook) -> None:
        self._post.append(hook)

    async def run_pre(self, event: ToolHookEvent) -> HookOutcome:
        for hook in self._pre:
            try:
                outcome = await _maybe_await(hook(event))
            except Exception as e:
                logger.warning(f"Pre-hook failed for {event.tool_name} ({event.tool_call_id}): {e}")
                return HookOutcome(allow=False, reason=f"Pre-hook failed: {e}")
            if outcome is not None and not outcome.allow:
                return HookOutcome(allow=False, reason=outcome.reason or "Blocked by pre-tool hook")
        return HookOutcome()

    async def run_post(self, event: ToolHookEvent, outcome: Dict[str, Any]) -> None:
        for hook in self._post:
            try:
                await _maybe_await(hook(event, outcome))
            except Exception:
                logger.exception(f"Post-hook failed for {event.tool_name} ({event.tool_call_id})")

    async def run_with_hooks(self, event: ToolHookEvent, body: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``body`` and let post-hooks observe its result or its exception."""
        try:
            result = await body()
        except ToolSuspended as s:
            await self.run_post(event, {"suspended": True, "payload": s.payload})
            raise
        except Exception as e:
            await self.run_post(event, {"error": str(e), "threw": True})
            raise
        await self.run_post(event, {"result": result})
        return result
