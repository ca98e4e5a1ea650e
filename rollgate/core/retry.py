"""Bounded retry with exponential backoff for async cluster calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from rollgate.core.errors import TransientClusterError

T = TypeVar("T")

DEFAULT_RETRY_ON: tuple[type[BaseException], ...] = (
    TransientClusterError,
    TimeoutError,
    ConnectionError,
    OSError,
)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRY_ON,
    deadline: float | None = None,
    description: str = "operation",
) -> T:
    """Call ``fn`` until it succeeds or the attempt budget is spent.

    Each attempt is bounded by ``deadline`` seconds; an attempt that runs
    past it raises ``TimeoutError``, which is retried like any other
    ``retry_on`` error. Delays double from ``base_delay`` up to ``max_delay``.

    Args:
        fn: Zero-argument coroutine factory
        attempts: Maximum number of attempts (>= 1)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        retry_on: Exception types that trigger another attempt
        deadline: Per-attempt timeout in seconds, or None
        description: Label used in log messages

    Returns:
        The value returned by ``fn``

    Raises:
        The last exception once attempts are exhausted, or immediately for
        exceptions outside ``retry_on``
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            async with asyncio.timeout(deadline):
                return await fn()
        except retry_on as e:
            if attempt == attempts:
                logger.warning(f"{description} failed after {attempts} attempt(s): {e!r}")
                raise
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e!r}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)

    raise AssertionError("unreachable")


@dataclass(frozen=True)
class CallPolicy:
    """Retry budget and deadline applied to every external call."""

    attempts: int = 3
    timeout: float | None = 30.0
    base_delay: float = 0.5
    max_delay: float = 8.0

    async def run(self, fn: Callable[[], Awaitable[T]], description: str) -> T:
        return await retry_async(
            fn,
            attempts=self.attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            deadline=self.timeout,
            description=description,
        )
