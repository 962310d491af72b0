"""Explicit cancellation shared by the dispatcher and executors."""

from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    """One-shot stop signal.

    Cancelling stops further dispatch; agents already running are terminated
    separately through the agent runner.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
