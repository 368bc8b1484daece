"""Byte-offset cursor over append-only transcript files."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from ccmonitor.db.store import AggregateStore

logger = logging.getLogger("ccmonitor.parser")


def session_id_for(path: Path | str) -> str:
    """``~/.claude/projects/<hash>/<session-id>.jsonl`` → ``<session-id>``."""
    return Path(path).stem or "unknown"


@dataclass
class ReadResult:
    path: str
    start: int
    end: int
    lines: list[str] = field(default_factory=list)
    truncated: bool = False


def _is_complete_record(fragment: bytes) -> bool:
    try:
        json.loads(fragment)
    except ValueError:
        return False
    return True


def _read_range(path: Path, start: int) -> tuple[int, bytes]:
    with path.open("rb") as handle:
        size = os.fstat(handle.fileno()).st_size
        if size < start:
            return size, b""
        handle.seek(start)
        return size, handle.read(size - start)


class IncrementalReader:
    """Returns only the lines appended since the last committed pass.

    The cursor is not moved by ``read``; the caller commits it once every
    returned line has been handled, so a crash mid-pass re-reads rather than
    skips lines.
    """

    def __init__(self, store: AggregateStore):
        self.store = store

    async def read(self, path: Path | str) -> ReadResult:
        file_path = Path(path).resolve()
        key = str(file_path)
        start = await self.store.get_file_position(key)

        size, data = await asyncio.to_thread(_read_range, file_path, start)
        truncated = size < start
        if truncated:
            logger.info(f"File shrank below its cursor ({size} < {start}), re-reading: {key}")
            start = 0
            size, data = await asyncio.to_thread(_read_range, file_path, 0)

        end = start + len(data)
        chunks = data.split(b"\n")
        tail = chunks.pop()
        # A trailing fragment without its newline may still be mid-write.
        if tail.strip():
            if _is_complete_record(tail):
                chunks.append(tail)
            else:
                end -= len(tail)

        lines = [
            chunk.decode("utf-8", errors="replace")
            for chunk in chunks
            if chunk.strip()
        ]
        return ReadResult(path=key, start=start, end=end, lines=lines, truncated=truncated)

    async def commit(self, result: ReadResult) -> None:
        await self.store.set_file_position(result.path, result.end)
