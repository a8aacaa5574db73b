"""Tests for the internal event emitter."""

from messenger_fanout.events import QUEUE_MESSAGE, EventEmitter


async def test_emit_calls_listeners_in_order():
    emitter = EventEmitter()
    calls = []

    async def first(payload):
        calls.append(("first", payload))

    async def second(payload):
        calls.append(("second", payload))

    emitter.on(QUEUE_MESSAGE, first)
    emitter.on(QUEUE_MESSAGE, second)

    assert await emitter.emit(QUEUE_MESSAGE, 1) == 2
    assert calls == [("first", 1), ("second", 1)]


async def test_failing_listener_does_not_stop_others():
    emitter = EventEmitter()
    calls = []

    async def broken(payload):
        raise RuntimeError("boom")

    async def healthy(payload):
        calls.append(payload)

    emitter.on("x", broken)
    emitter.on("x", healthy)

    assert await emitter.emit("x", "payload") == 2
    assert calls == ["payload"]


async def test_off_removes_listener():
    emitter = EventEmitter()
    calls = []

    async def listener(payload):
        calls.append(payload)

    emitter.on("x", listener)
    emitter.off("x", listener)
    emitter.off("x", listener)

    assert await emitter.emit("x", 1) == 0
    assert emitter.listener_count("x") == 0
    assert calls == []
