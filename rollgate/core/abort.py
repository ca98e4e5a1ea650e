"""Per-deployment abort signal.

Every wait in a release (observation windows, rollout polling, prober
backoff) goes through an ``AbortSignal`` so that a manual abort or the
overall deadline interrupts it promptly.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from rollgate.core.errors import DeploymentAbortedError
from rollgate.core.models import RollbackTrigger

T = TypeVar("T")


class AbortSignal:
    """One-shot abort flag that records what fired it. First trigger wins."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.trigger: RollbackTrigger | None = None
        self.reason: str = ""

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self, trigger: RollbackTrigger, reason: str = "") -> bool:
        """Fire the signal.

        Returns:
            True if this call fired it, False if it was already set
        """
        if self._event.is_set():
            return False
        self.trigger = trigger
        self.reason = reason
        self._event.set()
        return True

    def raise_if_set(self) -> None:
        if self._event.is_set():
            raise DeploymentAbortedError(
                self.trigger or RollbackTrigger.MANUAL, self.reason
            )

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early with ``DeploymentAbortedError`` on abort."""
        self.raise_if_set()
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(max(seconds, 0)):
                await self._event.wait()
        self.raise_if_set()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first (then cancel it)."""
        self.raise_if_set()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if task.cancelled():
            self.raise_if_set()
        return task.result()
