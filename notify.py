"""Operator notification channels."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

logger = logging.getLogger("autopilot.notify")


class OperatorNotifier(Protocol):
    async def send(self, text: str) -> None: ...


class LogNotifier:
    """Writes operator messages to the log only."""

    async def send(self, text: str) -> None:
        logger.warning("Operator notification: %s", text)


class WebhookNotifier:
    """POSTs ``{"content": text}`` to a chat webhook."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def send(self, text: str) -> None:
        payload = {"content": text}
        if self._client is not None:
            response = await self._client.post(self._url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
        response.raise_for_status()


async def notify_operator(notifier: OperatorNotifier | None, text: str) -> bool:
    """Send *text* to the operator, best effort.

    Returns *True* on delivery.  Failures are logged and never raised.
    """
    if notifier is None:
        logger.info("No operator notifier configured; dropping: %s", text)
        return False
    try:
        await notifier.send(text)
    except Exception:
        logger.warning("Operator notification failed", exc_info=True)
        return False
    return True


def build_notifier(webhook_url: str) -> OperatorNotifier:
    """Webhook notifier when a URL is configured, log-only otherwise."""
    if webhook_url:
        return WebhookNotifier(webhook_url)
    return LogNotifier()
