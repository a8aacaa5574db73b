"""
Event publishing onto broker queues.

Producers (HTTP endpoints, other services) emit chat events through here:
- ``message_sent`` envelopes go to the shared events queue consumed by
  the fan-out handler, with copies to each recipient's ``messages`` queue
  and to the conversation queue
- status, typing, friend and conversation events go to the matching
  personal queues of each target user
- system messages (bulk announcements, diagnostics) travel as ordinary
  ``message_sent`` events from the ``system`` sender
"""

from __future__ import annotations

import time
from typing import Any, Iterable

import structlog

from .broker import Broker
from .metrics import MetricsCollector
from .queues import conversation_queue_name, user_queue_names
from .router import MESSAGE_SENT
from .schemas import (
    BulkNotifyPayload,
    ConversationPayload,
    DiagnosticMessagePayload,
    FriendRequestPayload,
    MessageSentPayload,
    UserStatusPayload,
    UserTypingPayload,
)

log = structlog.get_logger()

SYSTEM_SENDER = "system"
ANNOUNCEMENTS_CONVERSATION = "system_announcements"
DIAGNOSTICS_CONVERSATION = "test_conversation"
DIAGNOSTIC_TEXT = "Test message from the fan-out service"


class EventPublisher:
    """Publishes typed chat events. Each method returns False if the broker failed."""

    def __init__(
        self,
        broker: Broker,
        events_queue: str,
        metrics: MetricsCollector | None = None,
    ):
        self._broker = broker
        self._events_queue = events_queue
        self._metrics = metrics

    async def publish_message_sent(self, payload: MessageSentPayload) -> bool:
        body = payload.to_wire()
        targets = _unique([*payload.recipients, payload.receiver_id])
        routes = [(self._events_queue, {"pattern": MESSAGE_SENT, "data": body})]
        routes += [(user_queue_names(uid)["messages"], body) for uid in targets]
        routes.append(
            (
                conversation_queue_name(payload.conversation_id),
                {"type": MESSAGE_SENT, **body},
            )
        )
        return await self._publish_all("message_sent", routes)

    async def publish_user_status(self, payload: UserStatusPayload) -> bool:
        body = payload.to_wire()
        routes = [(user_queue_names(uid)["status"], body) for uid in _unique(payload.notify_users)]
        return await self._publish_all("user_status", routes)

    async def publish_user_typing(self, payload: UserTypingPayload) -> bool:
        body = payload.to_wire()
        recipients = [uid for uid in _unique(payload.recipients) if uid != payload.user_id]
        routes = [(user_queue_names(uid)["typing"], body) for uid in recipients]
        return await self._publish_all("user_typing", routes)

    async def publish_friend_request(self, payload: FriendRequestPayload) -> bool:
        body = payload.to_wire()
        routes = [(user_queue_names(payload.receiver_id)["friends"], body)]
        return await self._publish_all("friend_request", routes)

    async def publish_conversation_created(self, payload: ConversationPayload) -> bool:
        body = payload.to_wire()
        routes = [
            (user_queue_names(uid)["conversations"], body)
            for uid in _unique(payload.participant_ids)
        ]
        return await self._publish_all("conversation_created", routes)

    async def publish_bulk_notify(self, payload: BulkNotifyPayload) -> tuple[int, int]:
        """Send one system message to each user. Returns (successful, failed)."""
        stamp = int(time.time() * 1000)
        user_ids = _unique(payload.user_ids)
        successful = 0
        for user_id in user_ids:
            message = MessageSentPayload(
                message_id=f"bulk_{stamp}_{user_id}",
                sender_id=SYSTEM_SENDER,
                receiver_id=user_id,
                conversation_id=ANNOUNCEMENTS_CONVERSATION,
                content=payload.message,
                recipients=[user_id],
            )
            if await self.publish_message_sent(message):
                successful += 1
        failed = len(user_ids) - successful
        log.info(
            "publisher.bulk_notify",
            notify_type=payload.type,
            successful=successful,
            failed=failed,
        )
        return successful, failed

    async def publish_diagnostic_message(
        self, payload: DiagnosticMessagePayload
    ) -> tuple[bool, MessageSentPayload]:
        message = MessageSentPayload(
            message_id=f"test_{int(time.time() * 1000)}",
            sender_id=SYSTEM_SENDER,
            receiver_id=payload.user_id,
            conversation_id=DIAGNOSTICS_CONVERSATION,
            content=payload.message or DIAGNOSTIC_TEXT,
            recipients=[payload.user_id],
        )
        return await self.publish_message_sent(message), message

    async def _publish_all(
        self, kind: str, routes: list[tuple[str, dict[str, Any]]]
    ) -> bool:
        for queue_name, body in routes:
            try:
                await self._broker.publish(queue_name, body)
            except Exception as exc:
                log.error("publisher.failed", kind=kind, queue=queue_name, error=str(exc))
                if self._metrics:
                    self._metrics.inc("publish_errors_total", kind=kind)
                return False
        if self._metrics:
            self._metrics.inc("events_published_total", kind=kind)
        log.debug("publisher.published", kind=kind, queues=len(routes))
        return True


def _unique(ids: Iterable[str | None]) -> list[str]:
    seen: list[str] = []
    for uid in ids:
        if uid and uid not in seen:
            seen.append(uid)
    return seen
