import json
import unittest

import aiosqlite

from ccmonitor.db.repositories.events import SqliteEventRepository
from ccmonitor.db.sqlite_migrations import SCHEMA_VERSION, run_migrations

_LEGACY_SCHEMA = """
CREATE TABLE sessions (
    id TEXT PRIMARY KEY,
    project_path TEXT,
    git_branch TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    total_input_tokens INTEGER DEFAULT 0,
    total_output_tokens INTEGER DEFAULT 0,
    total_cost_usd REAL DEFAULT 0,
    version TEXT
);
CREATE TABLE events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    hook_event_name TEXT,
    entry_type TEXT,
    tool_name TEXT,
    tool_input TEXT,
    tool_response TEXT,
    content TEXT,
    tokens_input INTEGER,
    tokens_output INTEGER,
    cost REAL,
    model TEXT,
    timestamp TEXT NOT NULL,
    uuid TEXT,
    parent_uuid TEXT,
    raw_data TEXT
);
"""


def _raw(cache_read: int, cache_write: int) -> str:
    return json.dumps({
        "type": "assistant",
        "message": {"usage": {
            "input_tokens": 100,
            "output_tokens": 10,
            "cache_read_input_tokens": cache_read,
            "cache_creation_input_tokens": cache_write,
        }},
    })


class LegacyMigrationTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await self.db.executescript(_LEGACY_SCHEMA)
        await self.db.execute(
            """INSERT INTO sessions (id, started_at, total_input_tokens, total_output_tokens, total_cost_usd)
               VALUES ('S-1', '2025-06-01T10:05:00.000Z', 300, 30, 3.0)"""
        )
        rows = [
            ("a", "2025-06-01T10:00:00.000Z", _raw(40, 5)),
            ("a", "2025-06-01T10:00:00.000Z", _raw(40, 5)),
            ("b", "2025-06-01T10:10:00.000Z", _raw(60, 0)),
        ]
        for uuid, ts, raw in rows:
            await self.db.execute(
                """INSERT INTO events (session_id, event_type, entry_type, tokens_input, tokens_output,
                                       cost, timestamp, uuid, raw_data)
                   VALUES ('S-1', 'transcript', 'assistant', 100, 10, 1.0, ?, ?, ?)""",
                (ts, uuid, raw),
            )
        await self.db.commit()

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _session(self) -> dict:
        async with self.db.execute("SELECT * FROM sessions WHERE id = 'S-1'") as cur:
            return dict(await cur.fetchone())

    async def test_duplicates_collapse_and_totals_are_corrected(self) -> None:
        await run_migrations(self.db)

        async with self.db.execute("SELECT id, uuid FROM events ORDER BY id") as cur:
            remaining = [(r["id"], r["uuid"]) for r in await cur.fetchall()]
        self.assertEqual(remaining, [(1, "a"), (3, "b")])

        session = await self._session()
        self.assertEqual(session["total_input_tokens"], 200)
        self.assertEqual(session["total_output_tokens"], 20)
        self.assertAlmostEqual(session["total_cost_usd"], 2.0)

    async def test_start_time_and_cache_backfill(self) -> None:
        await run_migrations(self.db)

        session = await self._session()
        self.assertEqual(session["started_at"], "2025-06-01T10:00:00.000Z")
        self.assertEqual(session["total_cache_read_tokens"], 100)
        self.assertEqual(session["total_cache_write_tokens"], 5)

        async with self.db.execute("SELECT cache_read_tokens, cache_write_tokens FROM events ORDER BY id") as cur:
            self.assertEqual([tuple(r) for r in await cur.fetchall()], [(40, 5), (60, 0)])

    async def test_uniqueness_is_enforced_after_migration(self) -> None:
        await run_migrations(self.db)
        repo = SqliteEventRepository(self.db)
        inserted = await repo.insert({
            "session_id": "S-1",
            "event_type": "transcript",
            "timestamp": "2025-06-01T11:00:00.000Z",
            "uuid": "a",
        })
        self.assertIsNone(inserted)

    async def test_rerun_is_a_no_op(self) -> None:
        await run_migrations(self.db)
        await run_migrations(self.db)
        async with self.db.execute("SELECT COUNT(*), MAX(version) FROM schema_version") as cur:
            count, version = await cur.fetchone()
        self.assertEqual(count, 1)
        self.assertEqual(version, SCHEMA_VERSION)


class FreshDatabaseTests(unittest.IsolatedAsyncioTestCase):
    async def test_creates_all_tables(self) -> None:
        db = await aiosqlite.connect(":memory:")
        try:
            await run_migrations(db)
            async with db.execute("SELECT name FROM sqlite_master WHERE type = 'table'") as cur:
                tables = {row[0] for row in await cur.fetchall()}
        finally:
            await db.close()
        self.assertTrue(
            {"sessions", "events", "mcp_tools", "tool_calls", "file_positions", "schema_version"} <= tables
        )


if __name__ == "__main__":
    unittest.main()
