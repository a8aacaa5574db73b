"""
Shared fixtures: in-memory broker, service config, started service.
"""

from datetime import datetime

import pytest

from messenger_fanout.broker import InMemoryBroker
from messenger_fanout.config import ServiceConfig
from messenger_fanout.service import FanoutService


class QueueRecorder:
    """Stands in for the inbound handler's queue callback."""

    def __init__(self):
        self.calls: list[tuple[str, str, object, datetime]] = []

    async def __call__(self, user_id, queue_name, message, timestamp):
        self.calls.append((user_id, queue_name, message, timestamp))


@pytest.fixture
def broker():
    return InMemoryBroker()


@pytest.fixture
def recorder():
    return QueueRecorder()


@pytest.fixture
def config_dict(tmp_path):
    return {
        "broker": {"backend": "memory", "events_queue": "messages_queue"},
        "fanout": {"auto_subscribe": True, "stream_queue_size": 10},
        "store": {"enabled": False, "db_path": str(tmp_path / "messages.db")},
        "logging": {"level": "debug", "format": "text"},
        "metrics": {"enabled": True},
    }


@pytest.fixture
def config(config_dict):
    return ServiceConfig.model_validate(config_dict)


@pytest.fixture
async def service(config, broker):
    svc = FanoutService(config, broker=broker)
    await svc.start()
    yield svc
    await svc.stop()
