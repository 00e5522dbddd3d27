from __future__ import annotations

import logging
from typing import Any

from bulkops.plugins import registry
from bulkops.plugins.base import NotificationPlugin

logger = logging.getLogger(__name__)


class LogNotifier(NotificationPlugin):
    name = "log"

    async def send(self, subject: str, body: str, **kwargs: Any) -> bool:
        recipient = kwargs.get("recipient")
        logger.info("Notification for %s: %s | %s", recipient or "(unknown)", subject, body)
        return True


def register_plugin() -> None:
    registry.register("notification", LogNotifier())
