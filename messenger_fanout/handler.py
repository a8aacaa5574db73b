"""
Inbound message event handling.

Single entry point for broker-originated events:
- ``message_sent`` events fan out to the receiver's notification and to
  the conversation feed
- payloads from per-user queues are re-emitted as ``queue.message``

Delivery is fire-and-forget. Payload shape is not validated beyond
optional field access; a malformed body degrades to an empty message.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from .events import QUEUE_MESSAGE, EventEmitter, QueueMessage
from .metrics import MetricsCollector
from .notifications import NotificationDispatcher
from .pubsub import MESSAGE_RECEIVED, MESSAGE_RECEIVED_IN_CONVERSATION, PubSub
from .store import MessageStore

log = structlog.get_logger()


def extract_message(payload: Any) -> dict[str, Any]:
    """Return the message body of a ``{"pattern", "data"}`` envelope or a bare body."""
    data = payload.get("data", payload) if isinstance(payload, dict) else payload
    if not isinstance(data, dict):
        log.warning("handler.malformed_payload", payload_type=type(data).__name__)
        return {}
    return dict(data)


class InboundEventHandler:
    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        pubsub: PubSub,
        emitter: EventEmitter,
        store: MessageStore | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._dispatcher = dispatcher
        self._pubsub = pubsub
        self._emitter = emitter
        self._store = store
        self._metrics = metrics

    async def handle_message_sent(self, payload: Any) -> dict[str, Any]:
        message = extract_message(payload)
        receiver_id = message.get("receiverId")
        conversation_id = message.get("conversationId")

        if message.get("content") is not None:
            log.info(
                "handler.message_sent",
                sender_id=message.get("senderId"),
                receiver_id=receiver_id,
                conversation_id=conversation_id,
                content=message.get("content"),
            )

        if self._store is not None:
            try:
                await self._store.save_message(message)
            except Exception:
                log.exception("handler.store_failed", conversation_id=conversation_id)
                if self._metrics:
                    self._metrics.inc("store_errors_total")

        if receiver_id:
            await self._dispatcher.send_to_user(receiver_id, message)
        else:
            # no addressee: global feed only
            await self._pubsub.publish(
                MESSAGE_RECEIVED, {"userId": None, "messageReceived": message}
            )

        await self._pubsub.publish(
            MESSAGE_RECEIVED_IN_CONVERSATION,
            {
                "conversationId": conversation_id,
                "messageReceivedInConversation": message,
            },
        )
        return message

    async def on_queue_message(
        self,
        user_id: str,
        queue_name: str,
        message: Any,
        timestamp: datetime,
    ) -> None:
        log.debug("handler.queue_message", user_id=user_id, queue=queue_name)
        await self._emitter.emit(
            QUEUE_MESSAGE,
            QueueMessage(
                user_id=user_id,
                queue_name=queue_name,
                message=message,
                timestamp=timestamp,
            ),
        )
