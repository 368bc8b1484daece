"""SQLite implementation of EventRepository."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ccmonitor.models import EventItem

_EVENT_COLUMNS = (
    "session_id",
    "event_type",
    "hook_event_name",
    "entry_type",
    "tool_name",
    "tool_input",
    "tool_response",
    "content",
    "tokens_input",
    "tokens_output",
    "cache_read_tokens",
    "cache_write_tokens",
    "cost",
    "model",
    "timestamp",
    "uuid",
    "parent_uuid",
    "raw_data",
)

_ITEM_SELECT = """
    SELECT id, session_id, event_type, hook_event_name, entry_type, tool_name, content,
           tokens_input, tokens_output, cache_read_tokens, cache_write_tokens,
           cost, model, timestamp
    FROM events
"""


def row_to_item(row: Any) -> EventItem:
    data = dict(row)
    return EventItem(
        id=data["id"],
        sessionId=data["session_id"],
        eventType=data["event_type"],
        hookEventName=data.get("hook_event_name") or None,
        entryType=data.get("entry_type") or None,
        toolName=data.get("tool_name") or None,
        content=data.get("content") or None,
        tokensInput=data.get("tokens_input"),
        tokensOutput=data.get("tokens_output"),
        cacheReadTokens=data.get("cache_read_tokens"),
        cacheWriteTokens=data.get("cache_write_tokens"),
        cost=data.get("cost"),
        model=data.get("model") or None,
        timestamp=data["timestamp"],
    )


class SqliteEventRepository:
    """Append-only event log.

    A producer-supplied ``uuid`` is unique across all sessions; the partial
    unique index turns a second insert of the same uuid into a no-op.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def insert(self, event_data: dict, *, commit: bool = True) -> int | None:
        """Insert one event. Returns the new row id, or None for a duplicate uuid."""
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        async with self.db.execute(
            f"""INSERT INTO events ({", ".join(_EVENT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT DO NOTHING""",
            tuple(event_data.get(column) for column in _EVENT_COLUMNS),
        ) as cur:
            inserted = cur.rowcount == 1
            row_id = cur.lastrowid
        if commit:
            await self.db.commit()
        return row_id if inserted else None

    async def exists(self, uuid: str) -> bool:
        # Checked globally: the same record can appear in several transcript
        # files (resumed, forked and sub-agent sessions).
        async with self.db.execute(
            "SELECT 1 FROM events WHERE uuid = ? LIMIT 1", (uuid,)
        ) as cur:
            return await cur.fetchone() is not None

    async def get_by_id(self, event_id: int) -> dict | None:
        async with self.db.execute("SELECT * FROM events WHERE id = ?", (event_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_events(
        self, session_id: str | None = None, limit: int = 100, offset: int = 0,
    ) -> list[EventItem]:
        if session_id:
            query = f"{_ITEM_SELECT} WHERE session_id = ? ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
            params: tuple = (session_id, limit, offset)
        else:
            query = f"{_ITEM_SELECT} ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
            params = (limit, offset)

        async with self.db.execute(query, params) as cur:
            return [row_to_item(r) for r in await cur.fetchall()]

    async def list_for_session(self, session_id: str, limit: int = 1000) -> list[EventItem]:
        return await self.list_events(session_id, limit, 0)

    async def search(self, query: str, limit: int = 50) -> list[EventItem]:
        pattern = f"%{query}%"
        async with self.db.execute(
            f"{_ITEM_SELECT} WHERE content LIKE ? OR tool_name LIKE ? ORDER BY timestamp DESC LIMIT ?",
            (pattern, pattern, limit),
        ) as cur:
            return [row_to_item(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM events") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
