"""Reader → classifier → store → broadcaster pipeline for transcript files."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from ccmonitor import config
from ccmonitor.db.store import AggregateStore
from ccmonitor.models import EventItem
from ccmonitor.observability import (
    record_ingestion,
    record_parser_failure,
    record_token_cost,
    record_tool_result,
    start_span,
)
from ccmonitor.parsers.transcript import (
    ClassifiedEntry,
    MalformedEntryError,
    classify_entry,
    parse_entry,
    parse_line,
)
from ccmonitor.services.broadcaster import LiveBroadcaster
from ccmonitor.services.transcript_reader import IncrementalReader, session_id_for

logger = logging.getLogger("ccmonitor.parser")


def to_event_item(event_id: int, classified: ClassifiedEntry) -> EventItem:
    """Broadcast view of a stored event row, with content trimmed for the wire."""
    row = classified.event
    content = row.get("content")
    return EventItem(
        id=event_id,
        sessionId=row["session_id"],
        eventType=row["event_type"],
        hookEventName=row.get("hook_event_name"),
        entryType=row.get("entry_type"),
        toolName=row.get("tool_name"),
        content=content[: config.BROADCAST_CONTENT_LIMIT] if content else None,
        tokensInput=row.get("tokens_input"),
        tokensOutput=row.get("tokens_output"),
        cacheReadTokens=row.get("cache_read_tokens"),
        cacheWriteTokens=row.get("cache_write_tokens"),
        cost=row.get("cost"),
        model=row.get("model"),
        timestamp=row["timestamp"],
    )


class TranscriptParser:
    def __init__(
        self,
        store: AggregateStore,
        broadcaster: LiveBroadcaster,
        reader: IncrementalReader | None = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.reader = reader or IncrementalReader(store)

    async def process_entry(
        self,
        data: dict[str, Any],
        session_id: str,
        *,
        publish_stats: bool = True,
    ) -> EventItem | None:
        """Store one decoded record. Returns None for duplicates and inert types.

        Raises ``MalformedEntryError`` when the record does not fit its shape;
        storage errors propagate.
        """
        entry = parse_entry(data)
        classified = classify_entry(entry, session_id, raw=data)
        if classified is None:
            return None

        uuid = classified.event.get("uuid")
        if uuid and await self.store.event_exists(uuid):
            return None

        event_id = await self.store.record_event(classified.event, classified.session, classified.tool_calls)
        if event_id is None:
            return None

        self._record_metrics(classified)
        item = to_event_item(event_id, classified)
        await self._broadcast(item, publish_stats=publish_stats)
        return item

    def _record_metrics(self, classified: ClassifiedEntry) -> None:
        for name in classified.tool_names:
            record_tool_result(name, "success", source="transcript")
        for call in classified.tool_calls:
            if call.failed:
                record_tool_result(call.tool_name or "", "error", source="transcript")
        if classified.usage is not None:
            record_token_cost(
                model=classified.event.get("model") or "",
                token_input=classified.usage.total_input,
                token_output=classified.usage.output,
                cost_usd=classified.event.get("cost") or 0.0,
                source="transcript",
            )

    async def _broadcast(self, item: EventItem, *, publish_stats: bool) -> None:
        try:
            await self.broadcaster.publish_event(item)
            if publish_stats:
                await self.broadcaster.publish_stats(await self.store.get_stats())
        except Exception:
            logger.exception(f"Broadcast failed for event {item.id}")

    async def parse_file(self, path: Path | str) -> list[EventItem]:
        """Ingest the lines appended to ``path`` since the last pass.

        Malformed lines are skipped. The cursor moves only after every line
        has been handled; a storage failure leaves it in place and propagates.
        """
        file_path = Path(path)
        session_id = session_id_for(file_path)
        started = time.monotonic()
        events: list[EventItem] = []
        skipped = 0

        with start_span("transcript.parse_file", {"file": str(file_path), "session_id": session_id}):
            try:
                result = await self.reader.read(file_path)
                existed = True
                if result.lines:
                    existed = await self.store.get_session(session_id) is not None

                for line in result.lines:
                    try:
                        item = await self.process_entry(parse_line(line), session_id, publish_stats=False)
                    except MalformedEntryError as exc:
                        skipped += 1
                        record_parser_failure("transcript", source="file")
                        logger.debug(f"Skipping malformed line in {file_path.name}: {exc}")
                        continue
                    if item is not None:
                        events.append(item)

                await self.reader.commit(result)
            except Exception:
                record_ingestion("transcript_file", "error", (time.monotonic() - started) * 1000, source="file")
                raise

        record_ingestion("transcript_file", "success", (time.monotonic() - started) * 1000, source="file")
        if skipped:
            logger.info(f"Skipped {skipped} malformed lines in {file_path}")
        if events:
            logger.info(f"Ingested {len(events)} events from {file_path.name}")
            await self._publish_after_pass(session_id, announce_start=not existed)
        return events

    async def _publish_after_pass(self, session_id: str, *, announce_start: bool) -> None:
        try:
            if announce_start:
                session = await self.store.get_session(session_id)
                if session is not None:
                    await self.broadcaster.publish_session_start(session)
            await self.broadcaster.publish_stats(await self.store.get_stats())
        except Exception:
            logger.exception(f"Broadcast failed after pass for session {session_id}")
