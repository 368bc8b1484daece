"""Aggregate store: the single writer of durable state.

Every mutation runs under one write lock on the shared connection so that a
multi-statement change (event row plus session deltas plus tool counters) is
committed or rolled back as a unit, and no other writer can commit half of it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

import aiosqlite

from ccmonitor.db.repositories import (
    SqliteCostAnalyticsRepository,
    SqliteEventRepository,
    SqliteFilePositionRepository,
    SqliteSessionRepository,
    SqliteToolStatRepository,
)
from ccmonitor.models import EventItem, SessionDetail, SessionSummary, Stats, ToolCall, ToolStat

logger = logging.getLogger("ccmonitor.db")


class AggregateStore:
    """Sessions, events, per-tool statistics and file cursors."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.sessions = SqliteSessionRepository(db)
        self.events = SqliteEventRepository(db)
        self.tool_stats = SqliteToolStatRepository(db)
        self.cursors = SqliteFilePositionRepository(db)
        self.analytics = SqliteCostAnalyticsRepository(db)
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize writers; commit on success, roll back on any error."""
        async with self._write_lock:
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()

    # ── Mutations ───────────────────────────────────────────────────

    async def upsert_session(self, session_data: dict) -> None:
        async with self.transaction():
            await self.sessions.upsert(session_data, commit=False)

    async def insert_event(self, event_data: dict) -> int | None:
        async with self.transaction():
            return await self.events.insert(event_data, commit=False)

    async def upsert_tool_stat(
        self, session_id: str, tool_name: str, success: bool, duration_ms: int = 0,
    ) -> None:
        async with self.transaction():
            await self.tool_stats.upsert(session_id, tool_name, success, duration_ms, commit=False)

    async def record_event(
        self,
        event_data: dict,
        session_data: dict,
        tool_calls: Iterable[ToolCall] = (),
    ) -> int | None:
        """Store one event together with its session deltas and tool counters.

        ``session_data`` carries both the seed attributes (start time, project
        path, branch, version) and the additive totals. When the event's uuid
        is already stored the whole unit is discarded and ``None`` is returned,
        so a duplicate can never touch session totals.

        ``tool_calls`` are external tool invocations and failing outcomes seen
        in this record; see ``SqliteToolStatRepository.apply_call``.
        """
        async with self._write_lock:
            try:
                await self.sessions.upsert(session_data, commit=False)
                event_id = await self.events.insert(event_data, commit=False)
                if event_id is None:
                    await self.db.rollback()
                    logger.debug(f"Duplicate event discarded: uuid={event_data.get('uuid')}")
                    return None
                for call in tool_calls:
                    await self.tool_stats.apply_call(session_data["id"], call, commit=False)
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()
            return event_id

    async def set_file_position(self, file_path: str, position: int) -> None:
        async with self._write_lock:
            await self.cursors.set_position(file_path, position)

    # ── Reads ───────────────────────────────────────────────────────

    async def get_file_position(self, file_path: str) -> int:
        return await self.cursors.get_position(file_path)

    # Readers share the writer's connection, so a read issued while a unit is
    # open would see its uncommitted rows. Reads that drive dedup decisions or
    # broadcasts wait for the writer to finish.

    async def event_exists(self, uuid: str) -> bool:
        async with self._write_lock:
            return await self.events.exists(uuid)

    async def get_stats(self) -> Stats:
        async with self._write_lock:
            return await self.sessions.get_stats()

    async def get_session(self, session_id: str) -> SessionSummary | None:
        async with self._write_lock:
            return await self.sessions.get_summary(session_id)

    async def list_sessions(self, limit: int = 50, offset: int = 0) -> list[SessionSummary]:
        return await self.sessions.list_summaries(limit, offset)

    async def get_session_detail(self, session_id: str) -> SessionDetail | None:
        summary = await self.sessions.get_summary(session_id)
        if summary is None:
            return None
        events = await self.events.list_for_session(session_id)
        # Detail view reads oldest first.
        return SessionDetail(session=summary, events=list(reversed(events)))

    async def list_events(
        self, session_id: str | None = None, limit: int = 100, offset: int = 0,
    ) -> list[EventItem]:
        return await self.events.list_events(session_id, limit, offset)

    async def search_events(self, query: str, limit: int = 50) -> list[EventItem]:
        return await self.events.search(query, limit)

    async def get_tool_stats(self) -> list[ToolStat]:
        return await self.tool_stats.list_aggregated()
