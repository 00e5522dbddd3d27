from __future__ import annotations

import logging
from typing import Any

import httpx

from bulkops.config import settings
from bulkops.plugins import registry
from bulkops.plugins.base import NotificationPlugin

logger = logging.getLogger(__name__)


class WebhookNotifier(NotificationPlugin):
    """POSTs notifications as JSON to a configured URL."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, subject: str, body: str, **kwargs: Any) -> bool:
        payload = {"subject": subject, "body": body, **{k: v for k, v in kwargs.items() if v is not None}}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Webhook notification to %s failed: %s", self.url, exc)
                return False
        return True


def register_plugin() -> None:
    if settings.NOTIFICATION_WEBHOOK_URL:
        registry.register("notification", WebhookNotifier(settings.NOTIFICATION_WEBHOOK_URL))
