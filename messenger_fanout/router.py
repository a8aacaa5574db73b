"""
Broker event routing.

Events on the shared events queue arrive as ``{"pattern": ..., "data": ...}``
envelopes. The router dispatches them by pattern.
"""

from __future__ import annotations

from typing import Any

import structlog

from .handler import InboundEventHandler

log = structlog.get_logger()

MESSAGE_SENT = "message_sent"


class EventRouter:
    def __init__(self, handler: InboundEventHandler):
        self._handler = handler

    async def dispatch(self, envelope: Any) -> None:
        """Main event dispatch."""
        pattern = envelope.get("pattern") if isinstance(envelope, dict) else None

        if pattern == MESSAGE_SENT:
            await self._handler.handle_message_sent(envelope)
        else:
            log.warning("router.unknown_pattern", pattern=pattern)
