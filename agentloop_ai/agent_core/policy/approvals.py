"""Pending ``ask`` decisions resolved by an external actor.

The dispatcher registers a pending approval, announces it on the event bus and
then waits on it. Whoever answers (a UI, an API handler, a test) calls
``respond`` with the tool call id, plus the run id when several runs are in
flight. Aborting a run resolves every wait of that run as ``decline`` so no
tool body runs after an abort.

Pending approvals are keyed by ``(run_id, tool_call_id)``: providers reuse
call ids across conversations, so two concurrent runs may wait on the same id.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..schemas.domain import ApprovalDecision, ToolCallRequest, ToolCategory

logger = logging.getLogger(__name__)


@dataclass
class PendingApproval:
    run_id: str
    tool_call_id: str
    tool_name: str
    category: Optional[ToolCategory]
    args: Dict[str, Any] = field(default_factory=dict)
    future: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    @property
    def key(self) -> Tuple[str, str]:
        return (self.run_id, self.tool_call_id)


class AmbiguousApprovalError(ValueError):
    """Raised when a tool call id is pending in several runs and no run id was given."""

    def __init__(self, tool_call_id: str, run_ids: List[str]) -> None:
        super().__init__(
            f"Tool call '{tool_call_id}' is pending in runs {sorted(run_ids)}; pass run_id to choose one"
        )
        self.tool_call_id = tool_call_id
        self.run_ids = run_ids


class ApprovalGate:
    """Registry of pending approvals keyed by run id and tool call id."""

    def __init__(self) -> None:
        self._pending: Dict[Tuple[str, str], PendingApproval] = {}

    def register(
        self,
        *,
        run_id: str,
        tool_call_id: str,
        tool_name: str,
        category: Optional[ToolCategory],
        args: Optional[Dict[str, Any]] = None,
    ) -> PendingApproval:
        pending = PendingApproval(
            run_id=run_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            category=category,
            args=dict(args or {}),
        )
        self._pending[pending.key] = pending
        return pending

    async def wait(self, pending: PendingApproval) -> ApprovalDecision:
        try:
            return await pending.future
        finally:
            if self._pending.get(pending.key) is pending:
                del self._pending[pending.key]

    async def request(
        self,
        run_id: str,
        call: ToolCallRequest,
        category: Optional[ToolCategory],
    ) -> ApprovalDecision:
        """Register ``call`` and wait for its decision."""
        pending = self.register(
            run_id=run_id, tool_call_id=call.id, tool_name=call.name, category=category, args=call.args
        )
        return await self.wait(pending)

    def respond(
        self, tool_call_id: str, decision: ApprovalDecision | str, *, run_id: Optional[str] = None
    ) -> bool:
        """Resolve one pending approval. Returns False when nothing was waiting.

        Raises:
            AmbiguousApprovalError: If ``run_id`` is omitted and ``tool_call_id``
                is pending in more than one run.
        """
        decision = ApprovalDecision(decision)
        pending = self._find(tool_call_id, run_id)
        if pending is None:
            logger.debug(f"No pending approval for tool call {tool_call_id} (run {run_id})")
            return False
        pending.future.set_result(decision)

        # Decisions that widen permissions also release the run's sibling waits.
        if decision is ApprovalDecision.yolo:
            self._release(pending.run_id, lambda p: True)
        elif decision is ApprovalDecision.always_allow_category and pending.category is not None:
            self._release(pending.run_id, lambda p: p.category == pending.category)
        return True

    def decline_all(self, run_id: str) -> int:
        count = 0
        for pending in list(self._pending.values()):
            if pending.run_id == run_id and not pending.future.done():
                pending.future.set_result(ApprovalDecision.decline)
                count += 1
        if count:
            logger.info(f"Declined {count} pending approval(s) for aborted run {run_id}")
        return count

    def pending(self, run_id: Optional[str] = None) -> List[PendingApproval]:
        return [p for p in self._pending.values() if run_id is None or p.run_id == run_id]

    def _find(self, tool_call_id: str, run_id: Optional[str]) -> Optional[PendingApproval]:
        if run_id is not None:
            pending = self._pending.get((run_id, tool_call_id))
            return pending if pending is not None and not pending.future.done() else None
        matches = [
            p for p in self._pending.values() if p.tool_call_id == tool_call_id and not p.future.done()
        ]
        if len(matches) > 1:
            raise AmbiguousApprovalError(tool_call_id, [p.run_id for p in matches])
        return matches[0] if matches else None

    def _release(self, run_id: str, predicate) -> None:
        for other in list(self._pending.values()):
            if other.run_id == run_id and not other.future.done() and predicate(other):
                other.future.set_result(ApprovalDecision.approve)
