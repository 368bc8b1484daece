"""SQLite implementation of SessionRepository."""
from __future__ import annotations

from typing import Any

import aiosqlite

from ccmonitor.date_utils import utc_now_iso
from ccmonitor.models import SessionSummary, Stats

_ADDITIVE_FIELDS = (
    "total_input_tokens",
    "total_output_tokens",
    "total_cache_read_tokens",
    "total_cache_write_tokens",
)

_SUMMARY_SELECT = """
    SELECT
        s.*,
        (SELECT COUNT(*) FROM events e WHERE e.session_id = s.id) AS event_count,
        (SELECT COUNT(*) FROM events e
          WHERE e.session_id = s.id AND e.tool_name IS NOT NULL AND e.tool_name != '') AS tool_call_count
    FROM sessions s
"""


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _non_negative_float(value: Any) -> float:
    try:
        return max(0.0, float(value or 0.0))
    except (TypeError, ValueError):
        return 0.0


def row_to_summary(row: Any) -> SessionSummary:
    data = dict(row)
    return SessionSummary(
        id=data["id"],
        projectPath=data.get("project_path"),
        gitBranch=data.get("git_branch"),
        startedAt=data.get("started_at") or "",
        endedAt=data.get("ended_at"),
        totalInputTokens=data.get("total_input_tokens") or 0,
        totalOutputTokens=data.get("total_output_tokens") or 0,
        totalCacheReadTokens=data.get("total_cache_read_tokens") or 0,
        totalCacheWriteTokens=data.get("total_cache_write_tokens") or 0,
        totalCostUsd=data.get("total_cost_usd") or 0.0,
        version=data.get("version"),
        eventCount=data.get("event_count") or 0,
        toolCallCount=data.get("tool_call_count") or 0,
    )


class SqliteSessionRepository:
    """Sessions with additive running totals.

    Scalar attributes follow fill-if-missing rules, the start time only moves
    earlier, the end time only moves later and is never cleared, and every
    counter is applied as ``col = col + delta``.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, session_data: dict, *, commit: bool = True) -> None:
        started_at = session_data.get("started_at") or None
        ended_at = session_data.get("ended_at") or None
        params = {
            "id": session_data["id"],
            "project_path": session_data.get("project_path") or None,
            "git_branch": session_data.get("git_branch") or None,
            "version": session_data.get("version") or None,
            "started_at": started_at,
            "insert_started_at": started_at or utc_now_iso(),
            "ended_at": ended_at,
            "total_cost_usd": _non_negative_float(session_data.get("total_cost_usd")),
        }
        for field in _ADDITIVE_FIELDS:
            params[field] = _non_negative_int(session_data.get(field))

        await self.db.execute(
            """INSERT INTO sessions (
                id, project_path, git_branch, started_at, ended_at,
                total_input_tokens, total_output_tokens,
                total_cache_read_tokens, total_cache_write_tokens,
                total_cost_usd, version
            ) VALUES (
                :id, :project_path, :git_branch, :insert_started_at, :ended_at,
                :total_input_tokens, :total_output_tokens,
                :total_cache_read_tokens, :total_cache_write_tokens,
                :total_cost_usd, :version
            )
            ON CONFLICT(id) DO UPDATE SET
                started_at = CASE
                    WHEN :started_at IS NOT NULL AND :started_at < sessions.started_at THEN :started_at
                    ELSE sessions.started_at END,
                ended_at = CASE
                    WHEN :ended_at IS NOT NULL AND (sessions.ended_at IS NULL OR :ended_at > sessions.ended_at)
                        THEN :ended_at
                    ELSE sessions.ended_at END,
                project_path = COALESCE(NULLIF(sessions.project_path, ''), :project_path),
                git_branch = COALESCE(NULLIF(sessions.git_branch, ''), :git_branch),
                version = COALESCE(NULLIF(sessions.version, ''), :version),
                total_input_tokens = COALESCE(sessions.total_input_tokens, 0) + :total_input_tokens,
                total_output_tokens = COALESCE(sessions.total_output_tokens, 0) + :total_output_tokens,
                total_cache_read_tokens = COALESCE(sessions.total_cache_read_tokens, 0) + :total_cache_read_tokens,
                total_cache_write_tokens = COALESCE(sessions.total_cache_write_tokens, 0) + :total_cache_write_tokens,
                total_cost_usd = COALESCE(sessions.total_cost_usd, 0) + :total_cost_usd
            """,
            params,
        )
        if commit:
            await self.db.commit()

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_summary(self, session_id: str) -> SessionSummary | None:
        async with self.db.execute(
            f"{_SUMMARY_SELECT} WHERE s.id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return row_to_summary(row) if row else None

    async def list_summaries(self, limit: int = 50, offset: int = 0) -> list[SessionSummary]:
        async with self.db.execute(
            f"{_SUMMARY_SELECT} ORDER BY s.started_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        ) as cur:
            return [row_to_summary(r) for r in await cur.fetchall()]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def get_stats(self) -> Stats:
        """Global totals broadcast alongside every live update."""
        async with self.db.execute(
            """SELECT
                (SELECT COUNT(*) FROM sessions),
                (SELECT COUNT(*) FROM events),
                (SELECT COALESCE(SUM(total_input_tokens + total_output_tokens), 0) FROM sessions),
                (SELECT COALESCE(SUM(total_cost_usd), 0) FROM sessions),
                (SELECT COUNT(DISTINCT tool_name) FROM mcp_tools)"""
        ) as cur:
            row = await cur.fetchone()
        return Stats(
            totalSessions=row[0] or 0,
            totalEvents=row[1] or 0,
            totalTokens=row[2] or 0,
            totalCost=row[3] or 0.0,
            mcpToolsUsed=row[4] or 0,
        )
