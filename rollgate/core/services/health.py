"""HTTP health probing of a cluster's public service."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from rollgate.core.models import HealthResult
from rollgate.infra.constants import DEFAULT_CONSTANTS

if TYPE_CHECKING:
    from rollgate.core.abort import AbortSignal


class HealthProber:
    """Probe ``GET {endpoint}/health``; only HTTP 200 counts as healthy.

    Transport errors (connection refused, DNS, timeouts) are retried with
    exponential backoff. Any HTTP response other than 200 fails at once.
    A probe never runs longer than ``timeout * (retries + 1)`` seconds.
    """

    def __init__(
        self,
        *,
        retries: int = 3,
        backoff_base: float = 0.5,
        path: str = DEFAULT_CONSTANTS.HEALTH_PATH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = retries
        self.backoff_base = backoff_base
        self.path = path
        self._transport = transport

    def _url(self, endpoint: str) -> str:
        return f"{endpoint.rstrip('/')}{self.path}"

    async def check(
        self,
        endpoint: str,
        timeout: float,
        *,
        abort: AbortSignal | None = None,
    ) -> HealthResult:
        """Probe an endpoint.

        Args:
            endpoint: Base URL of the service
            timeout: Per-request timeout in seconds
            abort: Optional signal that interrupts backoff waits

        Returns:
            HealthResult; ``ok`` is True only for an HTTP 200 response
        """
        url = self._url(endpoint)
        budget = timeout * (self.retries + 1)
        started = time.perf_counter()
        attempts = 0
        last_error: str | None = None

        try:
            async with (
                asyncio.timeout(budget),
                httpx.AsyncClient(transport=self._transport, timeout=timeout) as client,
            ):
                for attempt in range(self.retries + 1):
                    attempts = attempt + 1
                    request_started = time.perf_counter()
                    try:
                        response = await client.get(url)
                    except httpx.TransportError as e:
                        last_error = f"{type(e).__name__}: {e}"
                        logger.warning(
                            f"Health probe {url} failed "
                            f"(attempt {attempts}/{self.retries + 1}): {last_error}"
                        )
                        if attempt < self.retries:
                            delay = self.backoff_base * (2**attempt)
                            if abort is not None:
                                await abort.sleep(delay)
                            else:
                                await asyncio.sleep(delay)
                        continue

                    latency_ms = (time.perf_counter() - request_started) * 1000
                    ok = response.status_code == 200
                    if not ok:
                        logger.warning(
                            f"Health probe {url} returned {response.status_code}"
                        )
                    return HealthResult(
                        ok=ok,
                        status_code=response.status_code,
                        latency_ms=round(latency_ms, 2),
                        attempts=attempts,
                        endpoint=endpoint,
                        error=None if ok else f"HTTP {response.status_code}",
                    )
        except TimeoutError:
            last_error = f"probe budget of {budget:g}s exhausted"
            logger.warning(f"Health probe {url}: {last_error}")

        return HealthResult(
            ok=False,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            attempts=attempts,
            endpoint=endpoint,
            error=last_error,
        )
