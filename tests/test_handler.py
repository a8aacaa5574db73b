"""Tests for inbound event handling and fan-out."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from messenger_fanout.events import QUEUE_MESSAGE, EventEmitter, QueueMessage
from messenger_fanout.handler import InboundEventHandler, extract_message
from messenger_fanout.metrics import MetricsCollector
from messenger_fanout.notifications import NotificationDispatcher
from messenger_fanout.pubsub import MESSAGE_RECEIVED, MESSAGE_RECEIVED_IN_CONVERSATION, PubSub
from messenger_fanout.router import EventRouter


class RecordingPubSub(PubSub):
    def __init__(self):
        super().__init__()
        self.published: list[tuple[str, dict]] = []

    async def publish(self, trigger, payload):
        self.published.append((trigger, payload))
        return await super().publish(trigger, payload)

    def on(self, trigger):
        return [payload for name, payload in self.published if name == trigger]


class SpyDispatcher(NotificationDispatcher):
    def __init__(self, pubsub):
        super().__init__(pubsub)
        self.calls: list[tuple[str, dict]] = []

    async def send_to_user(self, user_id, message):
        self.calls.append((user_id, message))
        return await super().send_to_user(user_id, message)


@pytest.fixture
def pubsub():
    return RecordingPubSub()


@pytest.fixture
def dispatcher(pubsub):
    return SpyDispatcher(pubsub)


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def handler(dispatcher, pubsub, emitter):
    return InboundEventHandler(dispatcher, pubsub, emitter)


MESSAGE = {"senderId": "A", "receiverId": "B", "conversationId": "C1", "content": "hi"}


async def test_message_sent_fans_out_once_per_event(handler, dispatcher, pubsub):
    await handler.handle_message_sent({"pattern": "message_sent", "data": MESSAGE})

    assert dispatcher.calls == [("B", MESSAGE)]
    conversation = pubsub.on(MESSAGE_RECEIVED_IN_CONVERSATION)
    assert len(conversation) == 1
    assert conversation[0]["conversationId"] == "C1"
    assert conversation[0]["messageReceivedInConversation"] == MESSAGE
    assert pubsub.on(MESSAGE_RECEIVED) == [{"userId": "B", "messageReceived": MESSAGE}]


async def test_two_events_fan_out_twice(handler, dispatcher, pubsub):
    await handler.handle_message_sent({"data": MESSAGE})
    await handler.handle_message_sent({"data": {**MESSAGE, "content": "again"}})

    assert len(dispatcher.calls) == 2
    assert len(pubsub.on(MESSAGE_RECEIVED_IN_CONVERSATION)) == 2


async def test_bare_body_accepted(handler, dispatcher):
    await handler.handle_message_sent(MESSAGE)
    assert dispatcher.calls == [("B", MESSAGE)]


async def test_message_without_receiver_goes_to_global_feed(handler, dispatcher, pubsub):
    group_message = {"senderId": "A", "conversationId": "G1", "content": "all"}
    await handler.handle_message_sent({"data": group_message})

    assert dispatcher.calls == []
    assert pubsub.on(MESSAGE_RECEIVED) == [{"userId": None, "messageReceived": group_message}]
    assert len(pubsub.on(MESSAGE_RECEIVED_IN_CONVERSATION)) == 1


@pytest.mark.parametrize("payload", [{"data": "garbage"}, None, ["not", "a", "dict"]])
async def test_malformed_payload_degrades_silently(handler, dispatcher, pubsub, payload):
    message = await handler.handle_message_sent(payload)

    assert message == {}
    assert dispatcher.calls == []
    conversation = pubsub.on(MESSAGE_RECEIVED_IN_CONVERSATION)
    assert conversation == [{"conversationId": None, "messageReceivedInConversation": {}}]


async def test_store_receives_message(dispatcher, pubsub, emitter):
    store = AsyncMock()
    handler = InboundEventHandler(dispatcher, pubsub, emitter, store=store)

    await handler.handle_message_sent({"data": MESSAGE})

    store.save_message.assert_awaited_once_with(MESSAGE)


async def test_store_failure_does_not_block_delivery(dispatcher, pubsub, emitter):
    store = AsyncMock()
    store.save_message.side_effect = RuntimeError("disk full")
    metrics = MetricsCollector()
    handler = InboundEventHandler(dispatcher, pubsub, emitter, store=store, metrics=metrics)

    await handler.handle_message_sent({"data": MESSAGE})

    assert dispatcher.calls == [("B", MESSAGE)]
    assert metrics.get("store_errors_total") == 1


async def test_queue_message_emitted(handler, emitter):
    received: list[QueueMessage] = []

    async def listener(event):
        received.append(event)

    emitter.on(QUEUE_MESSAGE, listener)
    now = datetime.now(timezone.utc)
    await handler.on_queue_message("u1", "user.u1.typing", {"isTyping": True}, now)

    assert received == [
        QueueMessage(user_id="u1", queue_name="user.u1.typing", message={"isTyping": True}, timestamp=now)
    ]


def test_extract_message_copies_body():
    body = {"content": "x"}
    extracted = extract_message({"data": body})
    extracted["content"] = "changed"
    assert body == {"content": "x"}


async def test_router_dispatches_message_sent():
    handler = AsyncMock()
    router = EventRouter(handler)
    envelope = {"pattern": "message_sent", "data": MESSAGE}

    await router.dispatch(envelope)

    handler.handle_message_sent.assert_awaited_once_with(envelope)


@pytest.mark.parametrize("envelope", [{"pattern": "user_typing", "data": {}}, {"data": MESSAGE}, "text"])
async def test_router_ignores_unknown_patterns(envelope):
    handler = AsyncMock()
    await EventRouter(handler).dispatch(envelope)
    handler.handle_message_sent.assert_not_awaited()


async def test_dispatcher_publishes_without_listeners():
    pubsub = PubSub()
    metrics = MetricsCollector()
    dispatcher = NotificationDispatcher(pubsub, metrics)

    assert await dispatcher.send_to_user("B", MESSAGE) == 0
    assert metrics.get("messages_sent_total") == 1
