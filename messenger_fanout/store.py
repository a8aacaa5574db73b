"""
Message persistence collaborator.

The fan-out path does not own persistence. Callers that want inbound
messages stored pass a MessageStore; SqliteMessageStore is the bundled
implementation, keeping an append-only log of message bodies.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Protocol

import aiosqlite

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id      TEXT,
    sender_id       TEXT,
    receiver_id     TEXT,
    conversation_id TEXT,
    content         TEXT,
    body            TEXT NOT NULL,
    stored_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, id);
"""


class MessageStore(Protocol):
    async def save_message(self, body: dict[str, Any]) -> None: ...


class SqliteMessageStore:
    """Async SQLite message log."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save_message(self, body: dict[str, Any]) -> None:
        assert self._db
        now = datetime.now(timezone.utc).isoformat()
        await self._db.execute(
            """INSERT INTO messages
               (message_id, sender_id, receiver_id, conversation_id, content, body, stored_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                _text(body.get("messageId") or body.get("id")),
                _text(body.get("senderId")),
                _text(body.get("receiverId")),
                _text(body.get("conversationId")),
                _text(body.get("content")),
                json.dumps(body, default=str),
                now,
            ),
        )
        await self._db.commit()

    async def recent_messages(
        self, conversation_id: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Newest-last bodies of the last *limit* messages in a conversation."""
        assert self._db
        cursor = await self._db.execute(
            """SELECT body FROM messages WHERE conversation_id = ?
               ORDER BY id DESC LIMIT ?""",
            (conversation_id, limit),
        )
        rows = await cursor.fetchall()
        return [json.loads(row["body"]) for row in reversed(rows)]

    async def count(self) -> int:
        assert self._db
        cursor = await self._db.execute("SELECT COUNT(*) AS n FROM messages")
        row = await cursor.fetchone()
        return row["n"] if row else 0


def _text(value: Any) -> str | None:
    return None if value is None else str(value)
