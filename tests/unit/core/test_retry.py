"""Tests for bounded retry."""

import asyncio

import pytest

from rollgate.core.errors import TransientClusterError
from rollgate.core.retry import CallPolicy, retry_async


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_returns_first_success(self) -> None:
        calls = 0

        async def fn() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        assert await retry_async(fn, attempts=3, base_delay=0) == "ok"
        assert calls == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        calls = 0

        async def fn() -> int:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientClusterError("flaky")
            return calls

        assert await retry_async(fn, attempts=3, base_delay=0) == 3

    @pytest.mark.asyncio
    async def test_raises_after_budget(self) -> None:
        calls = 0

        async def fn() -> None:
            nonlocal calls
            calls += 1
            raise TransientClusterError("down")

        with pytest.raises(TransientClusterError):
            await retry_async(fn, attempts=2, base_delay=0)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_raises_immediately(self) -> None:
        calls = 0

        async def fn() -> None:
            nonlocal calls
            calls += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_async(fn, attempts=5, base_delay=0)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_deadline_bounds_each_attempt(self) -> None:
        calls = 0

        async def fn() -> None:
            nonlocal calls
            calls += 1
            await asyncio.sleep(1)

        with pytest.raises(TimeoutError):
            await retry_async(fn, attempts=2, base_delay=0, deadline=0.01)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_zero_attempts_rejected(self) -> None:
        async def fn() -> None:
            return None

        with pytest.raises(ValueError):
            await retry_async(fn, attempts=0)


class TestCallPolicy:
    @pytest.mark.asyncio
    async def test_run_applies_policy(self) -> None:
        policy = CallPolicy(attempts=2, timeout=1.0, base_delay=0, max_delay=0)
        outcomes = [TransientClusterError("once"), "done"]

        async def fn() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert await policy.run(fn, "test call") == "done"
