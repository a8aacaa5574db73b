"""
Fan-out metrics with Prometheus text exposition.

Every metric is declared up front in ``COUNTERS`` or ``GAUGES`` with its
help text; recording an undeclared name raises ``ValueError``. Counters
may carry labels, e.g. ``queue_messages_total{kind="typing"}``.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

PREFIX = "fanout_"

COUNTERS = {
    "subscriptions_opened_total": "Queue consumers opened",
    "subscriptions_failed_total": "Queue subscribe attempts that failed",
    "subscriptions_closed_total": "Queue consumers closed on unsubscribe",
    "subscriptions_lost_total": "Queue consumers lost with their connection",
    "queue_messages_total": "Payloads received on per-user and conversation queues",
    "messages_sent_total": "Per-user notifications dispatched",
    "pubsub_published_total": "Payloads published on the pub/sub bridge",
    "pubsub_dropped_total": "Pub/sub publishes that reached no listener",
    "pubsub_overflow_total": "Pub/sub payloads dropped for a full listener queue",
    "stream_dropped_total": "SSE items dropped for a full stream queue",
    "store_errors_total": "Inbound messages the store failed to save",
    "events_published_total": "Events published onto the broker",
    "publish_errors_total": "Broker publishes that failed",
}

GAUGES = {
    "active_consumers": "Queue consumers currently owned by the registry",
    "connected_streams": "Open SSE streams",
}

Labels = tuple[tuple[str, str], ...]


def _labels(labels: dict[str, Any]) -> Labels:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _series(name: str, labels: Labels) -> str:
    if not labels:
        return PREFIX + name
    body = ",".join(f'{k}="{v}"' for k, v in labels)
    return f"{PREFIX}{name}{{{body}}}"


class MetricsCollector:
    """Declared counters and gauges for the fan-out path."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[Labels, int]] = defaultdict(dict)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    def inc(self, name: str, value: int = 1, **labels: Any) -> None:
        if name not in COUNTERS:
            raise ValueError(f"Unknown counter: {name}")
        series = self._counters[name]
        key = _labels(labels)
        series[key] = series.get(key, 0) + value

    def set_gauge(self, name: str, value: float) -> None:
        if name not in GAUGES:
            raise ValueError(f"Unknown gauge: {name}")
        self._gauges[name] = value

    def get(self, name: str, **labels: Any) -> int | float:
        """Gauge value, or counter value summed over series matching *labels*."""
        if name in GAUGES:
            return self._gauges.get(name, 0)
        if name not in COUNTERS:
            raise ValueError(f"Unknown metric: {name}")
        wanted = set(_labels(labels))
        return sum(
            value
            for key, value in self._counters.get(name, {}).items()
            if wanted <= set(key)
        )

    def to_prometheus(self) -> str:
        lines = []
        for name in sorted(self._counters):
            lines.append(f"# HELP {PREFIX}{name} {COUNTERS[name]}")
            lines.append(f"# TYPE {PREFIX}{name} counter")
            for labels, value in sorted(self._counters[name].items()):
                lines.append(f"{_series(name, labels)} {value}")
        for name, value in sorted(self._gauges.items()):
            lines.append(f"# HELP {PREFIX}{name} {GAUGES[name]}")
            lines.append(f"# TYPE {PREFIX}{name} gauge")
            lines.append(f"{PREFIX}{name} {value}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {time.time() - self._start_time:.1f}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "counters": {
                _series(name, labels): value
                for name, series in self._counters.items()
                for labels, value in series.items()
            },
            "gauges": {PREFIX + name: value for name, value in self._gauges.items()},
            "uptime_seconds": time.time() - self._start_time,
        }
