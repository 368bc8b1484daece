"""SQLite implementation of the cost analytics queries.

Read-only rollups over ``sessions`` and ``events``. Day and minute buckets
use the process's local timezone (SQLite ``'localtime'``) and are gap-filled
in Python so callers always receive a contiguous series.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

import aiosqlite

from ccmonitor.models import (
    CostBreakdown,
    DailyCost,
    ExpensiveEvent,
    HourlyCost,
    LengthBucketCost,
    MinuteCost,
    ProjectDailyCost,
    ProjectStats,
    TextPattern,
)

# Averages used to estimate what cache reads would have cost at full price.
AVG_INPUT_RATE = 5.0
AVG_CACHE_READ_RATE = 0.5

_MINUTE_FORMAT = "%Y-%m-%dT%H:%M:00"

# (pattern category, by-tool label, keywords); first match wins.
_TEXT_RULES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("Thinking/Reasoning", "Text: Thinking", ("let me think", "i need to")),
    ("Code Explanation", "Text: Code/Explanation", ("```", "function", "const ", "import ")),
    ("Planning/Strategy", "Text: Planning", ("plan", "step", "first,", "approach")),
    ("Error Analysis", "Text: Error Analysis", ("error", "issue", "fix", "bug")),
    ("Tool Usage Explanation", "Text: Tool Intro", ("tool", "let me", "i'll", "i will")),
)
_SHORT = ("Short Response", "Text: Short")
_LONG = ("Long Response", "Text: Long")
_OTHER = ("Other", "Text: Other")

PATTERN_CATEGORIES = tuple(rule[0] for rule in _TEXT_RULES) + (_SHORT[0], _LONG[0], _OTHER[0])

_COSTED = "cost IS NOT NULL AND cost > 0"
_TEXT_ONLY = "(tool_name IS NULL OR tool_name = '') AND content IS NOT NULL AND content != ''"


def _classify(content: str) -> tuple[str, str]:
    lowered = content.lower()
    if lowered.startswith("[thinking]"):
        return _TEXT_RULES[0][0], _TEXT_RULES[0][1]
    for category, label, keywords in _TEXT_RULES:
        if any(keyword in lowered for keyword in keywords):
            return category, label
    if len(content) < 100:
        return _SHORT
    if len(content) > 500:
        return _LONG
    return _OTHER


def categorize_response(content: str) -> str:
    """Keyword heuristic bucket for a tool-less assistant response."""
    return _classify(content)[0]


def _breakdown(row: Any, key_column: str) -> CostBreakdown:
    return CostBreakdown(
        key=row[key_column],
        totalCost=row["total_cost"] or 0.0,
        count=row["count"] or 0,
        avgCost=row["avg_cost"] or 0.0,
        totalTokens=row["total_tokens"] or 0,
    )


class SqliteCostAnalyticsRepository:
    """Cost and token rollups used by the dashboard."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Time series ─────────────────────────────────────────────────

    async def costs_by_day(self, days: int = 30, today: date | None = None) -> list[DailyCost]:
        """Per-day totals for the last ``days`` local days, oldest first."""
        days = max(1, int(days))
        end = today or date.today()
        start = end - timedelta(days=days - 1)

        async with self.db.execute(
            """SELECT
                DATE(started_at, 'localtime') AS date,
                SUM(total_input_tokens) AS input_tokens,
                SUM(total_output_tokens) AS output_tokens,
                SUM(COALESCE(total_cache_read_tokens, 0)) AS cache_read_tokens,
                SUM(COALESCE(total_cache_write_tokens, 0)) AS cache_write_tokens,
                SUM(total_cost_usd) AS cost_usd
            FROM sessions
            WHERE DATE(started_at, 'localtime') BETWEEN ? AND ?
            GROUP BY DATE(started_at, 'localtime')""",
            (start.isoformat(), end.isoformat()),
        ) as cur:
            by_date = {row["date"]: row for row in await cur.fetchall()}

        series: list[DailyCost] = []
        for offset in range(days):
            day = (start + timedelta(days=offset)).isoformat()
            row = by_date.get(day)
            if row is None:
                series.append(DailyCost(date=day))
                continue
            cache_read = row["cache_read_tokens"] or 0
            cost = row["cost_usd"] or 0.0
            savings = cache_read / 1_000_000 * (AVG_INPUT_RATE - AVG_CACHE_READ_RATE)
            series.append(DailyCost(
                date=day,
                inputTokens=row["input_tokens"] or 0,
                outputTokens=row["output_tokens"] or 0,
                cacheReadTokens=cache_read,
                cacheWriteTokens=row["cache_write_tokens"] or 0,
                costUsd=cost,
                costWithoutCache=cost + savings,
                cacheSavings=savings,
            ))
        return series

    async def today_costs_by_minute(self, now: datetime | None = None) -> list[MinuteCost]:
        """Per-minute cost for the current local day with running totals.

        The series starts at the first minute with spend and runs to ``now``;
        minutes without spend repeat the running totals.
        """
        current = (now or datetime.now()).replace(second=0, microsecond=0)
        async with self.db.execute(
            f"""SELECT
                strftime('{_MINUTE_FORMAT}', timestamp, 'localtime') AS minute,
                SUM(COALESCE(cost, 0)) AS cost,
                SUM(COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0)) AS tokens
            FROM events
            WHERE DATE(timestamp, 'localtime') = ?
              AND {_COSTED}
            GROUP BY minute
            ORDER BY minute ASC""",
            (current.date().isoformat(),),
        ) as cur:
            rows = await cur.fetchall()

        if not rows:
            return []

        by_minute = {row["minute"]: row for row in rows}
        cursor = datetime.strptime(rows[0]["minute"], _MINUTE_FORMAT)
        end = max(current, datetime.strptime(rows[-1]["minute"], _MINUTE_FORMAT))

        series: list[MinuteCost] = []
        running_cost = 0.0
        running_tokens = 0
        while cursor <= end:
            key = cursor.strftime(_MINUTE_FORMAT)
            row = by_minute.get(key)
            cost = (row["cost"] or 0.0) if row else 0.0
            tokens = (row["tokens"] or 0) if row else 0
            running_cost += cost
            running_tokens += tokens
            series.append(MinuteCost(
                timestamp=key,
                cost=cost,
                tokens=tokens,
                runningCost=running_cost,
                runningTokens=running_tokens,
            ))
            cursor += timedelta(minutes=1)
        return series

    async def recent_cost_events(self, minutes: int = 60) -> list[dict]:
        async with self.db.execute(
            f"""SELECT
                timestamp,
                COALESCE(cost, 0) AS cost,
                COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0) AS tokens,
                model
            FROM events
            WHERE datetime(timestamp) >= datetime('now', ?)
              AND {_COSTED}
            ORDER BY timestamp ASC""",
            (f"-{int(minutes)} minutes",),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def costs_by_hour(self) -> list[HourlyCost]:
        async with self.db.execute(
            f"""SELECT
                strftime('%Y-%m-%d %H:00', timestamp) AS hour,
                SUM(COALESCE(cost, 0)) AS total_cost,
                COUNT(*) AS count,
                SUM(COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0)) AS total_tokens
            FROM events
            WHERE {_COSTED}
              AND datetime(timestamp) >= datetime('now', '-7 days')
            GROUP BY hour
            ORDER BY hour DESC"""
        ) as cur:
            rows = await cur.fetchall()
        return [
            HourlyCost(
                hour=r["hour"],
                totalCost=r["total_cost"] or 0.0,
                count=r["count"] or 0,
                totalTokens=r["total_tokens"] or 0,
            )
            for r in rows
        ]

    # ── Categorical breakdowns ──────────────────────────────────────

    async def _text_responses(self) -> list[Any]:
        async with self.db.execute(
            f"""SELECT
                content,
                COALESCE(cost, 0) AS cost,
                COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0) AS tokens
            FROM events
            WHERE {_COSTED} AND {_TEXT_ONLY}"""
        ) as cur:
            return await cur.fetchall()

    async def costs_by_tool(self) -> list[CostBreakdown]:
        """Spend per tool; tool-less responses are folded in as ``Text: *`` rows."""
        async with self.db.execute(
            f"""SELECT
                tool_name,
                SUM(COALESCE(cost, 0)) AS total_cost,
                COUNT(*) AS count,
                AVG(COALESCE(cost, 0)) AS avg_cost,
                SUM(COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0)) AS total_tokens
            FROM events
            WHERE {_COSTED}
              AND tool_name IS NOT NULL AND tool_name != ''
            GROUP BY tool_name"""
        ) as cur:
            results = [_breakdown(r, "tool_name") for r in await cur.fetchall()]

        buckets: dict[str, list[float]] = defaultdict(lambda: [0.0, 0, 0])
        for row in await self._text_responses():
            _, label = _classify(row["content"])
            bucket = buckets[label]
            bucket[0] += row["cost"]
            bucket[1] += 1
            bucket[2] += row["tokens"]

        for label, (cost, count, tokens) in buckets.items():
            results.append(CostBreakdown(
                key=label,
                totalCost=cost,
                count=int(count),
                avgCost=cost / count,
                totalTokens=int(tokens),
            ))

        results.sort(key=lambda item: item.totalCost, reverse=True)
        return results

    async def costs_by_model(self) -> list[CostBreakdown]:
        async with self.db.execute(
            f"""SELECT
                COALESCE(model, 'Unknown') AS model,
                SUM(COALESCE(cost, 0)) AS total_cost,
                COUNT(*) AS count,
                AVG(COALESCE(cost, 0)) AS avg_cost,
                SUM(COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0)) AS total_tokens
            FROM events
            WHERE {_COSTED}
            GROUP BY COALESCE(model, 'Unknown')
            ORDER BY total_cost DESC"""
        ) as cur:
            return [_breakdown(r, "model") for r in await cur.fetchall()]

    async def costs_by_entry_type(self) -> list[CostBreakdown]:
        async with self.db.execute(
            f"""SELECT
                COALESCE(entry_type, event_type) AS entry_type,
                SUM(COALESCE(cost, 0)) AS total_cost,
                COUNT(*) AS count,
                AVG(COALESCE(cost, 0)) AS avg_cost,
                SUM(COALESCE(tokens_input, 0) + COALESCE(tokens_output, 0)) AS total_tokens
            FROM events
            WHERE {_COSTED}
            GROUP BY COALESCE(entry_type, event_type)
            ORDER BY total_cost DESC"""
        ) as cur:
            return [_breakdown(r, "entry_type") for r in await cur.fetchall()]

    async def text_response_patterns(self) -> list[TextPattern]:
        totals: dict[str, dict[str, Any]] = {
            category: {"cost": 0.0, "count": 0, "tokens": 0, "examples": []}
            for category in PATTERN_CATEGORIES
        }
        for row in await self._text_responses():
            content = row["content"]
            data = totals[categorize_response(content)]
            data["cost"] += row["cost"]
            data["count"] += 1
            data["tokens"] += row["tokens"]
            if len(data["examples"]) < 3:
                data["examples"].append(content[:100])

        patterns = [
            TextPattern(
                category=category,
                totalCost=data["cost"],
                count=data["count"],
                avgCost=data["cost"] / data["count"],
                totalTokens=data["tokens"],
                avgTokens=data["tokens"] / data["count"],
                examples=data["examples"],
            )
            for category, data in totals.items()
            if data["count"] > 0
        ]
        patterns.sort(key=lambda item: item.totalCost, reverse=True)
        return patterns

    async def content_length_costs(self) -> list[LengthBucketCost]:
        async with self.db.execute(
            f"""SELECT
                CASE
                    WHEN LENGTH(content) < 100 THEN '< 100 chars'
                    WHEN LENGTH(content) < 500 THEN '100-500 chars'
                    WHEN LENGTH(content) < 1000 THEN '500-1K chars'
                    WHEN LENGTH(content) < 2000 THEN '1K-2K chars'
                    ELSE '2K+ chars'
                END AS length_bucket,
                SUM(COALESCE(cost, 0)) AS total_cost,
                COUNT(*) AS count,
                AVG(COALESCE(cost, 0)) AS avg_cost
            FROM events
            WHERE {_COSTED}
              AND (tool_name IS NULL OR tool_name = '')
              AND content IS NOT NULL
            GROUP BY length_bucket
            ORDER BY total_cost DESC"""
        ) as cur:
            rows = await cur.fetchall()
        return [
            LengthBucketCost(
                lengthBucket=r["length_bucket"],
                totalCost=r["total_cost"] or 0.0,
                count=r["count"] or 0,
                avgCost=r["avg_cost"] or 0.0,
            )
            for r in rows
        ]

    async def expensive_events(self, limit: int = 20, content_chars: int | None = 200) -> list[ExpensiveEvent]:
        """Top-N events by cost. ``content_chars=None`` keeps full content."""
        async with self.db.execute(
            f"""SELECT
                id, session_id, tool_name, content, entry_type, model, timestamp,
                COALESCE(cost, 0) AS cost,
                COALESCE(tokens_input, 0) AS tokens_input,
                COALESCE(tokens_output, 0) AS tokens_output
            FROM events
            WHERE {_COSTED}
            ORDER BY cost DESC
            LIMIT ?""",
            (limit,),
        ) as cur:
            rows = await cur.fetchall()

        events: list[ExpensiveEvent] = []
        for r in rows:
            content = r["content"]
            if content and content_chars is not None:
                content = content[:content_chars]
            events.append(ExpensiveEvent(
                id=r["id"],
                sessionId=r["session_id"],
                toolName=r["tool_name"],
                content=content or None,
                cost=r["cost"],
                tokens=r["tokens_input"] + r["tokens_output"],
                tokensInput=r["tokens_input"],
                tokensOutput=r["tokens_output"],
                model=r["model"],
                entryType=r["entry_type"],
                timestamp=r["timestamp"],
            ))
        return events

    # ── Projects ────────────────────────────────────────────────────

    async def project_stats(self) -> list[ProjectStats]:
        async with self.db.execute(
            """SELECT
                s.project_path,
                SUM(s.total_cost_usd) AS total_cost,
                COUNT(s.id) AS total_sessions,
                SUM(s.total_input_tokens) AS total_input_tokens,
                SUM(s.total_output_tokens) AS total_output_tokens,
                SUM(COALESCE(s.total_cache_read_tokens, 0)) AS total_cache_read_tokens,
                SUM(COALESCE(s.total_cache_write_tokens, 0)) AS total_cache_write_tokens,
                MIN(s.started_at) AS first_session_at,
                MAX(s.started_at) AS last_session_at,
                GROUP_CONCAT(DISTINCT s.git_branch) AS git_branches,
                (SELECT COUNT(*) FROM events e WHERE e.session_id IN (
                    SELECT id FROM sessions WHERE project_path = s.project_path
                )) AS total_events
            FROM sessions s
            WHERE s.project_path IS NOT NULL AND s.project_path != ''
            GROUP BY s.project_path
            ORDER BY total_cost DESC"""
        ) as cur:
            rows = await cur.fetchall()

        projects: list[ProjectStats] = []
        for r in rows:
            path = r["project_path"]
            branches = r["git_branches"] or ""
            projects.append(ProjectStats(
                projectPath=path,
                projectName=path.rstrip("/").split("/")[-1] or path,
                gitBranches=[b for b in branches.split(",") if b.strip()],
                totalCost=r["total_cost"] or 0.0,
                totalSessions=r["total_sessions"] or 0,
                totalEvents=r["total_events"] or 0,
                totalInputTokens=r["total_input_tokens"] or 0,
                totalOutputTokens=r["total_output_tokens"] or 0,
                totalCacheReadTokens=r["total_cache_read_tokens"] or 0,
                totalCacheWriteTokens=r["total_cache_write_tokens"] or 0,
                firstSessionAt=r["first_session_at"],
                lastSessionAt=r["last_session_at"],
            ))
        return projects

    async def project_costs_by_day(
        self, project_path: str, days: int = 30, today: date | None = None,
    ) -> list[ProjectDailyCost]:
        end = today or date.today()
        start = end - timedelta(days=max(1, int(days)) - 1)
        async with self.db.execute(
            """SELECT
                DATE(started_at, 'localtime') AS date,
                SUM(total_cost_usd) AS cost_usd,
                COUNT(id) AS sessions
            FROM sessions
            WHERE project_path = ?
              AND DATE(started_at, 'localtime') BETWEEN ? AND ?
            GROUP BY DATE(started_at, 'localtime')
            ORDER BY date ASC""",
            (project_path, start.isoformat(), end.isoformat()),
        ) as cur:
            rows = await cur.fetchall()
        return [
            ProjectDailyCost(date=r["date"], costUsd=r["cost_usd"] or 0.0, sessions=r["sessions"] or 0)
            for r in rows
        ]

    async def project_tool_breakdown(self, project_path: str) -> list[CostBreakdown]:
        async with self.db.execute(
            f"""SELECT
                COALESCE(e.tool_name, 'Text Response') AS tool_name,
                SUM(COALESCE(e.cost, 0)) AS total_cost,
                COUNT(*) AS count,
                AVG(COALESCE(e.cost, 0)) AS avg_cost,
                SUM(COALESCE(e.tokens_input, 0) + COALESCE(e.tokens_output, 0)) AS total_tokens
            FROM events e
            JOIN sessions s ON e.session_id = s.id
            WHERE s.project_path = ?
              AND e.cost IS NOT NULL AND e.cost > 0
            GROUP BY COALESCE(e.tool_name, 'Text Response')
            ORDER BY total_cost DESC""",
            (project_path,),
        ) as cur:
            return [_breakdown(r, "tool_name") for r in await cur.fetchall()]
