"""SQLite implementation of FilePositionRepository."""
from __future__ import annotations

import aiosqlite

from ccmonitor.date_utils import utc_now_iso


class SqliteFilePositionRepository:
    """Byte offsets already consumed per transcript file."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_position(self, file_path: str) -> int:
        async with self.db.execute(
            "SELECT position FROM file_positions WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
        return (row[0] or 0) if row else 0

    async def set_position(self, file_path: str, position: int) -> None:
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO file_positions (file_path, position, last_read_at)
               VALUES (?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                   position = excluded.position,
                   last_read_at = excluded.last_read_at""",
            (file_path, position, now),
        )
        await self.db.commit()

