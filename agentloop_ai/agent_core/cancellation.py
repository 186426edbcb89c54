"""Cooperative cancellation for one run."""

from __future__ import annotations

import asyncio
from typing import Optional


class AbortSignal:
    """Set once when a run is aborted; checked at cooperative suspension points.

    The loop checks it between iterations and the dispatcher between queued tool
    dispatches. An in-flight tool body is never interrupted.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason or "aborted"
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
