"""Tests for the abort signal."""

import asyncio

import pytest

from rollgate.core.abort import AbortSignal
from rollgate.core.errors import DeploymentAbortedError
from rollgate.core.models import RollbackTrigger


class TestAbortSignal:
    def test_first_trigger_wins(self) -> None:
        signal = AbortSignal()

        assert signal.set(RollbackTrigger.MANUAL, "operator")
        assert not signal.set(RollbackTrigger.TIMEOUT, "deadline")
        assert signal.trigger == RollbackTrigger.MANUAL
        assert signal.reason == "operator"

    def test_raise_if_set(self) -> None:
        signal = AbortSignal()
        signal.raise_if_set()

        signal.set(RollbackTrigger.TIMEOUT, "deadline")
        with pytest.raises(DeploymentAbortedError) as excinfo:
            signal.raise_if_set()
        assert excinfo.value.trigger == RollbackTrigger.TIMEOUT

    @pytest.mark.asyncio
    async def test_sleep_completes_without_abort(self) -> None:
        signal = AbortSignal()

        await signal.sleep(0.01)

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_abort(self) -> None:
        signal = AbortSignal()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, signal.set, RollbackTrigger.MANUAL, "stop")
        started = loop.time()

        with pytest.raises(DeploymentAbortedError):
            await signal.sleep(5)
        assert loop.time() - started < 1

    @pytest.mark.asyncio
    async def test_guard_returns_result(self) -> None:
        signal = AbortSignal()

        async def work() -> int:
            return 42

        assert await signal.guard(work()) == 42

    @pytest.mark.asyncio
    async def test_guard_cancels_work_on_abort(self) -> None:
        signal = AbortSignal()
        cancelled = asyncio.Event()

        async def work() -> None:
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        asyncio.get_running_loop().call_later(0.02, signal.set, RollbackTrigger.MANUAL)
        with pytest.raises(DeploymentAbortedError):
            await signal.guard(work())
        assert cancelled.is_set()
