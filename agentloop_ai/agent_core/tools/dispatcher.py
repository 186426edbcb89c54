"""Bounded-concurrency tool dispatch with permission, approval and hook gating.

Design
------

``ToolDispatcher.execute`` turns one iteration's tool call requests into
finalized ``ToolCall`` records:

1. Resolve the tool and its effective permission policy.
2. ``deny``: finalize a structured ``{"error": reason}`` without running the body.
3. ``ask``: register a pending approval, emit ``approval.required`` and wait for
   an external decision. ``decline`` (or an abort while waiting) finalizes
   without running the body; ``always_allow_category`` and ``yolo`` widen the
   run's permission state before the body runs.
4. Acquire one of ``concurrency_limit`` slots (FIFO). The abort signal is
   checked once the slot is held; aborted calls never start.
5. Run pre-hooks (veto), the body, then post-hooks.

Approval waits happen outside the slots so a call waiting on a human never
blocks allowed calls behind it. The dispatcher never touches the message list
or the snapshot; the loop folds the returned records in.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Mapping, Optional, Sequence

from ...core.errors import ToolSuspended
from ..cancellation import AbortSignal
from ..events import ApprovalRequired, ApprovalResolved, EventBus, ToolEnd, ToolStart, ToolUpdate
from ..policy.approvals import ApprovalGate
from ..policy.models import PermissionState
from ..schemas.domain import ApprovalDecision, PermissionPolicy, ToolCall, ToolCallRequest, _utc_now
from .base import Tool, ToolContext, ToolResult
from .hooks import HookManager, ToolHookEvent
from .registry import get_tool_category

logger = logging.getLogger(__name__)

ABORTED_ERROR = "aborted"


class ToolDispatcher:
    """Executes tool calls for one run at a time or many runs concurrently."""

    def __init__(
        self,
        *,
        approvals: ApprovalGate,
        hooks: Optional[HookManager] = None,
        bus: Optional[EventBus] = None,
        backends: Any = None,
        concurrency_limit: int = 4,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        self.approvals = approvals
        self.hooks = hooks or HookManager()
        self.bus = bus or EventBus()
        self.backends = backends
        self.concurrency_limit = concurrency_limit

    async def execute(
        self,
        tool_calls: Sequence[ToolCallRequest],
        tools: Mapping[str, Tool],
        permissions: PermissionState,
        concurrency_limit: Optional[int] = None,
        *,
        run_id: str,
        abort: Optional[AbortSignal] = None,
    ) -> List[ToolCall]:
        """
        Execute ``tool_calls`` and return one finalized record per request.

        Args:
            tool_calls: Requests from the model, in the order it produced them.
            tools: The run's resolved tool map (see ``create_dynamic_tools``).
            permissions: The run's permission state; may be widened by approvals.
            concurrency_limit: Max bodies in flight; defaults to the dispatcher's.
            run_id: Owning run.
            abort: The run's abort signal.

        Returns:
            Records in request order. Each carries its request's ``id``.
        """
        if not tool_calls:
            return []
        limit = concurrency_limit or self.concurrency_limit
        if limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        abort = abort or AbortSignal()
        slots = asyncio.Semaphore(limit)
        logger.debug(f"Dispatching {len(tool_calls)} tool call(s) for run {run_id} (limit={limit})")
        return list(
            await asyncio.gather(
                *(self._dispatch_one(call, tools, permissions, slots, run_id=run_id, abort=abort) for call in tool_calls)
            )
        )

    async def _dispatch_one(
        self,
        call: ToolCallRequest,
        tools: Mapping[str, Tool],
        permissions: PermissionState,
        slots: asyncio.Semaphore,
        *,
        run_id: str,
        abort: AbortSignal,
    ) -> ToolCall:
        started_at = _utc_now()
        tool = tools.get(call.name)
        if tool is None:
            return self._finish(run_id, call, {"error": f"Unknown tool '{call.name}'"}, True, started_at)

        category = get_tool_category(tool)
        resolution = permissions.resolve(call.name, category)
        if resolution.policy is PermissionPolicy.deny:
            logger.info(f"Tool '{call.name}' denied by {resolution.source} policy (run {run_id})")
            return self._finish(
                run_id, call, {"error": f"Tool '{call.name}' is denied by permission policy"}, True, started_at
            )

        if abort.aborted:
            return self._finish(run_id, call, {"error": ABORTED_ERROR}, True, started_at)

        if resolution.policy is PermissionPolicy.ask:
            decision = await self._await_approval(run_id, call, category)
            if decision is ApprovalDecision.decline:
                if abort.aborted:
                    reason = "Tool call was declined because the run was aborted"
                else:
                    reason = "Tool call was declined by the user"
                return self._finish(run_id, call, {"error": reason}, True, started_at)
            if decision is ApprovalDecision.yolo:
                permissions.set_yolo(True)
            elif decision is ApprovalDecision.always_allow_category:
                if category is not None:
                    permissions.grant_category(category)
                else:
                    permissions.grant_tool(call.name)

        async with slots:
            if abort.aborted:
                return self._finish(run_id, call, {"error": ABORTED_ERROR}, True, started_at)
            return await self._run_body(run_id, call, tool, category, abort, started_at)

    async def _await_approval(self, run_id: str, call: ToolCallRequest, category) -> ApprovalDecision:
        pending = self.approvals.register(
            run_id=run_id, tool_call_id=call.id, tool_name=call.name, category=category, args=call.args
        )
        self.bus.emit(
            ApprovalRequired(
                run_id=run_id,
                tool_call_id=call.id,
                tool_name=call.name,
                category=category.value if category is not None else None,
                args=call.args,
            )
        )
        decision = await self.approvals.wait(pending)
        self.bus.emit(ApprovalResolved(run_id=run_id, tool_call_id=call.id, decision=decision.value))
        return decision

    async def _run_body(self, run_id, call: ToolCallRequest, tool: Tool, category, abort, started_at) -> ToolCall:
        hook_event = ToolHookEvent(
            run_id=run_id, tool_call_id=call.id, tool_name=call.name, args=dict(call.args), category=category
        )
        pre = await self.hooks.run_pre(hook_event)
        if not pre.allow:
            logger.info(f"Tool '{call.name}' vetoed by pre-hook: {pre.reason}")
            return self._finish(run_id, call, {"error": pre.reason}, True, started_at)

        self.bus.emit(ToolStart(run_id=run_id, tool_call_id=call.id, tool_name=call.name, args=call.args))
        ctx = ToolContext(
            run_id=run_id,
            tool_call_id=call.id,
            abort=abort,
            backends=self.backends,
            on_update=lambda partial: self.bus.emit(
                ToolUpdate(run_id=run_id, tool_call_id=call.id, tool_name=call.name, partial=partial)
            ),
        )
        try:
            raw = await self.hooks.run_with_hooks(hook_event, lambda: tool.execute(ctx, args=dict(call.args)))
        except ToolSuspended as s:
            logger.info(f"Tool '{call.name}' suspended run {run_id}")
            record = ToolCall(
                id=call.id,
                name=call.name,
                args=call.args,
                started_at=started_at,
                suspended=True,
                suspend_payload=s.payload,
            )
            self.bus.emit(ToolEnd(run_id=run_id, tool_call_id=call.id, tool_name=call.name, result=s.payload))
            return record
        except Exception as e:
            logger.warning(f"Tool '{call.name}' raised: {e}")
            return self._finish(run_id, call, {"error": str(e)}, True, started_at)

        if isinstance(raw, ToolResult):
            return self._finish(run_id, call, raw.output, not raw.ok, started_at)
        return self._finish(run_id, call, raw, False, started_at)

    def _finish(self, run_id: str, call: ToolCallRequest, result: Any, is_error: bool, started_at) -> ToolCall:
        record = ToolCall(
            id=call.id,
            name=call.name,
            args=call.args,
            result=result,
            is_error=is_error,
            started_at=started_at,
            ended_at=_utc_now(),
        )
        self.bus.emit(
            ToolEnd(run_id=run_id, tool_call_id=call.id, tool_name=call.name, result=result, is_error=is_error)
        )
        return record

