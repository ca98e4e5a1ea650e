"""Fire-and-forget release notifications."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx
from loguru import logger


class Notifier(ABC):
    """Delivers release events to humans. Must never raise."""

    @abstractmethod
    async def notify(
        self, event: str, message: str, detail: dict[str, Any] | None = None
    ) -> None: ...


class LogNotifier(Notifier):
    """Writes notifications to the log."""

    async def notify(
        self, event: str, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        logger.bind(event=event, **(detail or {})).info(f"[notify] {event}: {message}")


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(
        self, event: str, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        payload = {
            "event": event,
            "message": message,
            "detail": detail or {},
            "timestamp": datetime.now(UTC).isoformat(),
        }
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook notification '{event}' to {self.url} failed: {e}")


class CompositeNotifier(Notifier):
    """Fans a notification out to several notifiers."""

    def __init__(self, notifiers: list[Notifier]) -> None:
        self.notifiers = notifiers

    async def notify(
        self, event: str, message: str, detail: dict[str, Any] | None = None
    ) -> None:
        for notifier in self.notifiers:
            await notifier.notify(event, message, detail)
