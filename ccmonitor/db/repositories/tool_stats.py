"""SQLite implementation of ToolStatRepository."""
from __future__ import annotations

import aiosqlite

from ccmonitor.date_utils import utc_now_iso
from ccmonitor.models import ToolCall, ToolStat


def server_name_for(tool_name: str) -> str | None:
    """``mcp__github__create_issue`` → ``github``."""
    parts = tool_name.split("__")
    if len(parts) >= 2 and parts[1]:
        return parts[1]
    return None


class SqliteToolStatRepository:
    """Per (session, tool) invocation counters, plus the ledger of counted calls."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(
        self,
        session_id: str,
        tool_name: str,
        success: bool,
        duration_ms: int = 0,
        *,
        commit: bool = True,
    ) -> None:
        now = utc_now_iso()
        success_inc = 1 if success else 0
        await self.db.execute(
            """INSERT INTO mcp_tools (
                session_id, tool_name, server_name,
                invocation_count, success_count, error_count,
                total_duration_ms, last_used_at
            ) VALUES (?, ?, ?, 1, ?, ?, ?, ?)
            ON CONFLICT(session_id, tool_name) DO UPDATE SET
                invocation_count = invocation_count + 1,
                success_count = success_count + excluded.success_count,
                error_count = error_count + excluded.error_count,
                total_duration_ms = total_duration_ms + excluded.total_duration_ms,
                last_used_at = excluded.last_used_at
            """,
            (
                session_id,
                tool_name,
                server_name_for(tool_name),
                success_inc,
                1 - success_inc,
                max(0, int(duration_ms or 0)),
                now,
            ),
        )
        if commit:
            await self.db.commit()

    async def apply_call(self, session_id: str, call: ToolCall, *, commit: bool = True) -> bool:
        """Fold one invocation or outcome into the counters.

        Invocations with a ``tool_use_id`` are counted once, whichever source
        reports them first. A failing outcome for an already counted call moves
        one count from success to error, at most once. Returns True when any
        counter changed.
        """
        changed = False
        if call.tool_name:
            if call.tool_use_id is None or await self._register_call(session_id, call):
                await self.upsert(session_id, call.tool_name, not call.failed, commit=False)
                changed = True
            elif call.failed:
                changed = await self._mark_failed(call.tool_use_id)
        elif call.tool_use_id and call.failed:
            changed = await self._mark_failed(call.tool_use_id)

        if commit:
            await self.db.commit()
        return changed

    async def _register_call(self, session_id: str, call: ToolCall) -> bool:
        cur = await self.db.execute(
            """INSERT INTO tool_calls (tool_use_id, session_id, tool_name, is_error, recorded_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(tool_use_id) DO NOTHING""",
            (call.tool_use_id, session_id, call.tool_name, 1 if call.failed else 0, utc_now_iso()),
        )
        inserted = (cur.rowcount or 0) > 0
        await cur.close()
        return inserted

    async def _mark_failed(self, tool_use_id: str) -> bool:
        async with self.db.execute(
            "SELECT session_id, tool_name FROM tool_calls WHERE tool_use_id = ? AND is_error = 0",
            (tool_use_id,),
        ) as cur:
            row = await cur.fetchone()
        # Unknown ids belong to tools that are not tracked.
        if row is None:
            return False

        await self.db.execute("UPDATE tool_calls SET is_error = 1 WHERE tool_use_id = ?", (tool_use_id,))
        await self.db.execute(
            """UPDATE mcp_tools SET
                   success_count = MAX(success_count - 1, 0),
                   error_count = error_count + 1
               WHERE session_id = ? AND tool_name = ?""",
            (row[0], row[1]),
        )
        return True

    async def get_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM mcp_tools WHERE session_id = ? ORDER BY tool_name",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_aggregated(self) -> list[ToolStat]:
        async with self.db.execute(
            """SELECT
                tool_name,
                MAX(server_name) AS server_name,
                SUM(invocation_count) AS invocation_count,
                SUM(success_count) AS success_count,
                SUM(error_count) AS error_count,
                SUM(total_duration_ms) AS total_duration_ms
            FROM mcp_tools
            GROUP BY tool_name
            ORDER BY invocation_count DESC"""
        ) as cur:
            rows = await cur.fetchall()

        stats: list[ToolStat] = []
        for row in rows:
            invocations = row["invocation_count"] or 0
            stats.append(ToolStat(
                toolName=row["tool_name"],
                serverName=row["server_name"],
                invocationCount=invocations,
                successRate=(row["success_count"] / invocations * 100) if invocations else 0.0,
                avgDurationMs=(row["total_duration_ms"] / invocations) if invocations else 0.0,
            ))
        return stats
