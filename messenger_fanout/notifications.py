"""
Per-user notification dispatch.

Best-effort and at-most-once: the message is published on the global
``messageReceived`` topic addressed to the user. Nothing checks that the
user is listening, and nothing is queued for later if they are not.
"""

from __future__ import annotations

from typing import Any

import structlog

from .metrics import MetricsCollector
from .pubsub import MESSAGE_RECEIVED, PubSub

log = structlog.get_logger()


class NotificationDispatcher:
    def __init__(self, pubsub: PubSub, metrics: MetricsCollector | None = None):
        self._pubsub = pubsub
        self._metrics = metrics

    async def send_to_user(self, user_id: str | None, message: dict[str, Any]) -> int:
        """Publish *message* for *user_id*. Returns the number of listeners reached."""
        log.info(
            "notifications.send",
            user_id=user_id,
            content=message.get("content"),
        )
        reached = await self._pubsub.publish(
            MESSAGE_RECEIVED, {"userId": user_id, "messageReceived": message}
        )
        if self._metrics:
            self._metrics.inc("messages_sent_total")
        return reached
