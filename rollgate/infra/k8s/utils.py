"""Helpers for driving the async cluster layer from synchronous code."""

from __future__ import annotations

import asyncio
import concurrent.futures
import re
from collections.abc import Coroutine
from typing import Any, TypeVar

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

T = TypeVar("T")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from a synchronous caller.

    CLI commands use this to drive the orchestrator. When called while a
    loop is already running (e.g. inside a notebook), the coroutine runs on
    a fresh loop in a worker thread.

    Example:
        report = run_sync(orchestrator.execute(request))
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


def parse_duration(value: str | float | int) -> float:
    """Parse a duration such as ``30``, ``30s``, ``5m``, ``500ms`` into seconds.

    Raises:
        ValueError: If the value is not a valid non-negative duration
    """
    if isinstance(value, int | float):
        if value < 0:
            raise ValueError(f"Duration must be non-negative, got {value}")
        return float(value)
    match = _DURATION_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]
