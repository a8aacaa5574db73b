"""Tests for metrics collection."""

import pytest

from messenger_fanout.metrics import MetricsCollector


def test_counter_increment():
    m = MetricsCollector()
    m.inc("messages_sent_total")
    m.inc("messages_sent_total")
    assert m.get("messages_sent_total") == 2


def test_unrecorded_counter_is_zero():
    assert MetricsCollector().get("store_errors_total") == 0


@pytest.mark.parametrize("record", [
    lambda m: m.inc("nothing_total"),
    lambda m: m.set_gauge("active_consumer", 1),
    lambda m: m.get("typo_total"),
])
def test_undeclared_metric_rejected(record):
    with pytest.raises(ValueError):
        record(MetricsCollector())


def test_labelled_counter():
    m = MetricsCollector()
    m.inc("queue_messages_total", kind="messages")
    m.inc("queue_messages_total", kind="messages")
    m.inc("queue_messages_total", kind="typing")

    assert m.get("queue_messages_total") == 3
    assert m.get("queue_messages_total", kind="messages") == 2
    assert m.get("queue_messages_total", kind="friends") == 0


def test_gauge_set():
    m = MetricsCollector()
    m.set_gauge("active_consumers", 5)
    assert m.get("active_consumers") == 5


def test_prometheus_format():
    m = MetricsCollector()
    m.inc("messages_sent_total", 3)
    m.inc("queue_messages_total", kind="status")
    m.set_gauge("active_consumers", 2)
    text = m.to_prometheus()
    assert "# HELP fanout_messages_sent_total Per-user notifications dispatched" in text
    assert "# TYPE fanout_messages_sent_total counter" in text
    assert "fanout_messages_sent_total 3" in text
    assert 'fanout_queue_messages_total{kind="status"} 1' in text
    assert "fanout_active_consumers 2" in text
    assert "fanout_uptime_seconds" in text


def test_to_dict():
    m = MetricsCollector()
    m.inc("pubsub_published_total")
    m.inc("events_published_total", kind="user_typing")
    data = m.to_dict()
    assert data["counters"] == {
        "fanout_pubsub_published_total": 1,
        'fanout_events_published_total{kind="user_typing"}': 1,
    }
    assert data["uptime_seconds"] >= 0
