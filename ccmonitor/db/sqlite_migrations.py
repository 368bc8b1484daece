"""Database schema creation and versioning.

All CREATE TABLE statements for the aggregate store, plus the one-time
cleanup steps that bring databases written by older releases up to the
current invariants. Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import json
import logging

import aiosqlite

logger = logging.getLogger("ccmonitor.db")

SCHEMA_VERSION = 4

_BACKFILL_BATCH = 1000

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                       TEXT PRIMARY KEY,
    project_path             TEXT,
    git_branch               TEXT,
    started_at               TEXT NOT NULL,
    ended_at                 TEXT,
    total_input_tokens       INTEGER DEFAULT 0,
    total_output_tokens      INTEGER DEFAULT 0,
    total_cache_read_tokens  INTEGER DEFAULT 0,
    total_cache_write_tokens INTEGER DEFAULT 0,
    total_cost_usd           REAL DEFAULT 0,
    version                  TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_started ON sessions(started_at);

-- ── 2. Events ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS events (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id         TEXT NOT NULL REFERENCES sessions(id),
    event_type         TEXT NOT NULL CHECK(event_type IN ('hook', 'transcript')),
    hook_event_name    TEXT,
    entry_type         TEXT,
    tool_name          TEXT,
    tool_input         TEXT,
    tool_response      TEXT,
    content            TEXT,
    tokens_input       INTEGER,
    tokens_output      INTEGER,
    cache_read_tokens  INTEGER,
    cache_write_tokens INTEGER,
    cost               REAL,
    model              TEXT,
    timestamp          TEXT NOT NULL,
    uuid               TEXT,
    parent_uuid        TEXT,
    raw_data           TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_session   ON events(session_id);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_tool      ON events(tool_name);
CREATE INDEX IF NOT EXISTS idx_events_type      ON events(event_type);

-- ── 3. Per-tool statistics ─────────────────────────────────────────
CREATE TABLE IF NOT EXISTS mcp_tools (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id        TEXT NOT NULL REFERENCES sessions(id),
    tool_name         TEXT NOT NULL,
    server_name       TEXT,
    invocation_count  INTEGER DEFAULT 0,
    success_count     INTEGER DEFAULT 0,
    error_count       INTEGER DEFAULT 0,
    total_duration_ms INTEGER DEFAULT 0,
    last_used_at      TEXT,
    UNIQUE(session_id, tool_name)
);

CREATE INDEX IF NOT EXISTS idx_mcp_tools_name ON mcp_tools(tool_name);

-- ── 4. Counted tool invocations ───────────────────────────────────
-- One row per counted invocation, so transcript and push records of the
-- same call are counted once and an error outcome is applied once.
CREATE TABLE IF NOT EXISTS tool_calls (
    tool_use_id  TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL REFERENCES sessions(id),
    tool_name    TEXT NOT NULL,
    is_error     INTEGER NOT NULL DEFAULT 0,
    recorded_at  TEXT
);

-- ── 5. File cursors ────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS file_positions (
    file_path    TEXT PRIMARY KEY,
    position     INTEGER DEFAULT 0,
    last_read_at TEXT
);
"""

_UNIQUE_UUID_INDEX = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_uuid_unique ON events(uuid) WHERE uuid IS NOT NULL"
)


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    logger.info(f"Adding {column} column to {table}")
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def collapse_duplicate_events(db: aiosqlite.Connection) -> int:
    """Remove rows sharing a dedup identifier, keeping the lowest id.

    The dropped rows' cost and token counts are subtracted from their owning
    sessions first. Returns the number of rows deleted.
    """
    async with db.execute(
        """SELECT uuid, MIN(id) AS keep_id
           FROM events
           WHERE uuid IS NOT NULL
           GROUP BY uuid
           HAVING COUNT(*) > 1"""
    ) as cur:
        duplicates = await cur.fetchall()

    if not duplicates:
        return 0

    logger.info(f"Found {len(duplicates)} duplicate event uuids, cleaning up")
    removed = 0
    for row in duplicates:
        uuid, keep_id = row[0], row[1]
        async with db.execute(
            """SELECT session_id,
                      COALESCE(cost, 0),
                      COALESCE(tokens_input, 0),
                      COALESCE(tokens_output, 0),
                      COALESCE(cache_read_tokens, 0),
                      COALESCE(cache_write_tokens, 0)
               FROM events
               WHERE uuid = ? AND id != ?""",
            (uuid, keep_id),
        ) as cur:
            to_delete = await cur.fetchall()

        for dup in to_delete:
            await db.execute(
                """UPDATE sessions
                   SET total_cost_usd = total_cost_usd - ?,
                       total_input_tokens = total_input_tokens - ?,
                       total_output_tokens = total_output_tokens - ?,
                       total_cache_read_tokens = COALESCE(total_cache_read_tokens, 0) - ?,
                       total_cache_write_tokens = COALESCE(total_cache_write_tokens, 0) - ?
                   WHERE id = ?""",
                (dup[1], dup[2], dup[3], dup[4], dup[5], dup[0]),
            )

        cur = await db.execute("DELETE FROM events WHERE uuid = ? AND id != ?", (uuid, keep_id))
        removed += cur.rowcount or 0
        await cur.close()

    logger.info(f"Removed {removed} duplicate events")
    return removed


async def fix_session_start_times(db: aiosqlite.Connection) -> int:
    """Move session start times earlier to match their earliest event."""
    async with db.execute(
        """SELECT s.id, MIN(e.timestamp) AS actual_start
           FROM sessions s
           JOIN events e ON s.id = e.session_id
           GROUP BY s.id
           HAVING MIN(e.timestamp) < s.started_at"""
    ) as cur:
        rows = await cur.fetchall()

    for row in rows:
        await db.execute("UPDATE sessions SET started_at = ? WHERE id = ?", (row[1], row[0]))
    if rows:
        logger.info(f"Fixed started_at for {len(rows)} sessions")
    return len(rows)


async def backfill_cache_tokens(db: aiosqlite.Connection) -> int:
    """Derive missing cache-token columns from each event's raw payload."""
    updated = 0
    last_id = 0
    while True:
        async with db.execute(
            """SELECT id, raw_data
               FROM events
               WHERE id > ?
                 AND raw_data IS NOT NULL
                 AND cache_read_tokens IS NULL
                 AND cost > 0
               ORDER BY id
               LIMIT ?""",
            (last_id, _BACKFILL_BATCH),
        ) as cur:
            rows = await cur.fetchall()
        if not rows:
            break

        for row in rows:
            last_id = row[0]
            try:
                data = json.loads(row[1])
            except (TypeError, ValueError):
                continue
            message = data.get("message") if isinstance(data, dict) else None
            usage = message.get("usage") if isinstance(message, dict) else None
            if not isinstance(usage, dict):
                usage = {}
            await db.execute(
                "UPDATE events SET cache_read_tokens = ?, cache_write_tokens = ? WHERE id = ?",
                (
                    usage.get("cache_read_input_tokens") or 0,
                    usage.get("cache_creation_input_tokens") or 0,
                    row[0],
                ),
            )
            updated += 1

    if updated:
        logger.info(f"Backfilled cache tokens for {updated} events")

    await db.execute(
        """UPDATE sessions SET
               total_cache_read_tokens = COALESCE((
                   SELECT SUM(COALESCE(cache_read_tokens, 0))
                   FROM events WHERE events.session_id = sessions.id
               ), 0),
               total_cache_write_tokens = COALESCE((
                   SELECT SUM(COALESCE(cache_write_tokens, 0))
                   FROM events WHERE events.session_id = sessions.id
               ), 0)
           WHERE total_cache_read_tokens = 0 OR total_cache_read_tokens IS NULL"""
    )
    return updated


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and run the legacy cleanup steps. Idempotent."""
    # Check current schema version
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.Error:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Explicit table upgrades for existing DBs.
    await _ensure_column(db, "events", "cache_read_tokens", "INTEGER")
    await _ensure_column(db, "events", "cache_write_tokens", "INTEGER")
    await _ensure_column(db, "sessions", "total_cache_read_tokens", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sessions", "total_cache_write_tokens", "INTEGER DEFAULT 0")

    # Duplicates must be gone before the unique index can be built.
    await collapse_duplicate_events(db)
    await db.execute(_UNIQUE_UUID_INDEX)

    await fix_session_start_times(db)
    await backfill_cache_tokens(db)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
