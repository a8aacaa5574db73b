"""GraphQL schema: message subscriptions backed by the pub/sub bridge.

Exposes ``messageReceived`` (global feed, optionally narrowed to one
receiver) and ``messageReceivedInConversation``, plus an
``activeSubscriptions`` query for monitoring.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Callable, List, Optional

import strawberry
from strawberry.scalars import JSON

from .pubsub import MESSAGE_RECEIVED, MESSAGE_RECEIVED_IN_CONVERSATION, PubSub
from .registry import SubscriptionRegistry


@strawberry.type(description="A chat message delivered through a subscription.")
class ChatMessage:
    id: Optional[str]
    content: Optional[str]
    sender_id: Optional[str]
    receiver_id: Optional[str]
    conversation_id: Optional[str]
    created_at: Optional[str]
    data: JSON


@strawberry.type(description="Broker queues a user is subscribed to.")
class UserSubscriptions:
    user_id: str
    queues: List[str]


def to_chat_message(body: Any) -> ChatMessage:
    body = body if isinstance(body, dict) else {}

    def _field(*names: str) -> Optional[str]:
        for name in names:
            if body.get(name) is not None:
                return str(body[name])
        return None

    return ChatMessage(
        id=_field("id", "messageId"),
        content=_field("content"),
        sender_id=_field("senderId"),
        receiver_id=_field("receiverId"),
        conversation_id=_field("conversationId"),
        created_at=_field("createdAt", "timestamp"),
        data=body,
    )


def make_message_received_resolver(
    pubsub: PubSub,
) -> Callable[..., AsyncGenerator[ChatMessage, None]]:
    async def message_received(
        self: Any, user_id: Optional[str] = None
    ) -> AsyncGenerator[ChatMessage, None]:
        async for payload in pubsub.async_iterator(MESSAGE_RECEIVED):
            if user_id is not None and payload.get("userId") != user_id:
                continue
            yield to_chat_message(payload.get("messageReceived"))

    return message_received


def make_conversation_resolver(
    pubsub: PubSub,
) -> Callable[..., AsyncGenerator[ChatMessage, None]]:
    async def message_received_in_conversation(
        self: Any, conversation_id: str
    ) -> AsyncGenerator[ChatMessage, None]:
        async for payload in pubsub.async_iterator(MESSAGE_RECEIVED_IN_CONVERSATION):
            if str(payload.get("conversationId")) != conversation_id:
                continue
            yield to_chat_message(payload.get("messageReceivedInConversation"))

    return message_received_in_conversation


def make_active_subscriptions_resolver(
    registry: SubscriptionRegistry,
) -> Callable[..., List[UserSubscriptions]]:
    def active_subscriptions(self: Any) -> List[UserSubscriptions]:
        return [
            UserSubscriptions(user_id=entry["user_id"], queues=entry["queues"])
            for entry in registry.get_active_subscriptions()
        ]

    return active_subscriptions


def build_schema(pubsub: PubSub, registry: SubscriptionRegistry) -> strawberry.Schema:
    query_ns = {
        "active_subscriptions": strawberry.field(
            resolver=make_active_subscriptions_resolver(registry)
        ),
    }
    Query = strawberry.type(type("Query", (), query_ns))

    subscription_ns = {
        "message_received": strawberry.subscription(
            resolver=make_message_received_resolver(pubsub)
        ),
        "message_received_in_conversation": strawberry.subscription(
            resolver=make_conversation_resolver(pubsub)
        ),
    }
    Subscription = strawberry.type(type("Subscription", (), subscription_ns))

    return strawberry.Schema(query=Query, subscription=Subscription)
