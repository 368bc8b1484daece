"""Directory watcher for transcript files using watchfiles.

Each raw notification (re)starts a per-path settle timer; the ingestion
pipeline runs once the timer elapses without a newer notification for the
same path. Passes over one path never overlap.
"""
from __future__ import annotations

import asyncio
import fnmatch
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from ccmonitor import config
from ccmonitor.services.transcript_parser import TranscriptParser

logger = logging.getLogger("ccmonitor.watcher")


class TranscriptWatcher:
    """Background watcher that feeds settled files to the transcript parser."""

    def __init__(
        self,
        parser: TranscriptParser,
        root: Path | None = None,
        *,
        pattern: str | None = None,
        debounce_ms: int | None = None,
        max_concurrent_files: int = 4,
    ):
        self.parser = parser
        self.root = Path(root) if root is not None else config.CLAUDE_PROJECTS_PATH
        self.pattern = pattern or config.WATCH_PATTERN
        self.debounce_s = max(0, debounce_ms if debounce_ms is not None else config.WATCH_DEBOUNCE_MS) / 1000
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_files))
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    @staticmethod
    def key_for(path: Path | str) -> str:
        """One key per physical file, however the path was spelled."""
        return str(Path(path).resolve())

    def matches(self, path: Path | str) -> bool:
        return fnmatch.fnmatch(Path(path).name, self.pattern)

    def _watch_filter(self, change: Change, path: str) -> bool:
        return change != Change.deleted and self.matches(path)

    async def start(self) -> None:
        """Scan existing files, then watch the tree in a background task."""
        if self._running:
            logger.warning("Transcript watcher already running")
            return
        if not self.root.exists():
            logger.warning(f"Watch root does not exist, watcher has nothing to monitor: {self.root}")
            return

        self._running = True
        self._closed = False
        self._stop_event = asyncio.Event()
        await self.initial_scan()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"Watching {self.root} for {self.pattern}")

    async def stop(self) -> None:
        """Cancel pending timers, close the subscription and drain in-flight passes."""
        self._running = False
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        cancelled_timers = len(self._timers)
        self._timers.clear()

        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        pending = list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()
        logger.info(f"Transcript watcher stopped ({cancelled_timers} pending timers cancelled)")

    async def initial_scan(self) -> int:
        """Queue every existing matching file as if it had just been added."""
        paths = await asyncio.to_thread(lambda: sorted(p for p in self.root.rglob(self.pattern) if p.is_file()))
        for path in paths:
            self.notify(path)
        logger.info(f"Initial scan queued {len(paths)} files under {self.root}")
        return len(paths)

    def notify(self, path: Path | str) -> None:
        """Record one raw change notification for ``path``."""
        if self._closed:
            return
        key = self.key_for(path)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.debounce_s, self._fire, key)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        if self._closed:
            return
        previous = self._inflight.get(key)
        task = asyncio.create_task(self._process(key, previous))
        self._inflight[key] = task
        task.add_done_callback(lambda done, k=key: self._forget(k, done))

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _process(self, key: str, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        async with self._semaphore:
            try:
                events = await self.parser.parse_file(Path(key))
            except FileNotFoundError:
                logger.info(f"File disappeared before it could be read: {key}")
            except Exception as e:
                logger.exception(f"Error ingesting {key}: {e}")
            else:
                if events:
                    logger.debug(f"{key}: {len(events)} new events")

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self._watch_filter,
                stop_event=self._stop_event,
                recursive=True,
            ):
                if not self._running:
                    break
                for _change, path in changes:
                    self.notify(path)
        except asyncio.CancelledError:
            logger.info("Transcript watcher task cancelled")
            raise
        except Exception as e:
            logger.error(f"Transcript watcher error: {e}")
        finally:
            self._running = False
