"""Push ingress: hook records forwarded by the Claude Code hook script."""
from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import ValidationError

from ccmonitor.db.store import AggregateStore
from ccmonitor.models import EventItem, HookEvent
from ccmonitor.observability import record_ingestion, record_tool_result, start_span
from ccmonitor.parsers.hooks import SESSION_END, SESSION_START, classify_hook_event
from ccmonitor.services.broadcaster import LiveBroadcaster
from ccmonitor.services.transcript_parser import to_event_item

logger = logging.getLogger("ccmonitor.ingress")


class InvalidHookEventError(ValueError):
    """The push record lacks ``session_id`` or ``hook_event_name``."""


def validate_hook_payload(payload: Any) -> HookEvent:
    if not isinstance(payload, dict):
        raise InvalidHookEventError("Expected a JSON object")
    if not payload.get("session_id") or not payload.get("hook_event_name"):
        raise InvalidHookEventError("Missing session_id or hook_event_name")
    try:
        return HookEvent.model_validate(payload)
    except ValidationError as exc:
        raise InvalidHookEventError(str(exc)) from exc


class EventProcessor:
    """Stores push records through the same session/event path as transcripts.

    Storage failures propagate to the caller. Broadcast failures are logged
    and never affect the stored result.
    """

    def __init__(self, store: AggregateStore, broadcaster: LiveBroadcaster):
        self.store = store
        self.broadcaster = broadcaster

    async def process_hook_event(self, event: HookEvent) -> EventItem:
        started = time.monotonic()
        classified = classify_hook_event(event)
        with start_span("ingress.hook_event", {"hook": event.hook_event_name, "session_id": event.session_id}):
            try:
                event_id = await self.store.record_event(
                    classified.event, classified.session, classified.tool_calls,
                )
            except Exception:
                record_ingestion("hook_event", "error", (time.monotonic() - started) * 1000, source="push")
                raise
        record_ingestion("hook_event", "success", (time.monotonic() - started) * 1000, source="push")
        for call in classified.tool_calls:
            record_tool_result(call.tool_name or "", "error" if call.failed else "success", source="push")

        # Push records carry no uuid, so every insert is new.
        item = to_event_item(event_id or 0, classified)
        await self._broadcast(item, event.hook_event_name)
        return item

    async def _broadcast(self, item: EventItem, hook_event_name: str) -> None:
        try:
            await self.broadcaster.publish_event(item)
            if hook_event_name in (SESSION_START, SESSION_END):
                session = await self.store.get_session(item.sessionId)
                if session is not None:
                    if hook_event_name == SESSION_START:
                        await self.broadcaster.publish_session_start(session)
                    else:
                        await self.broadcaster.publish_session_end(session)
            await self.broadcaster.publish_stats(await self.store.get_stats())
        except Exception:
            logger.exception(f"Broadcast failed for hook event {item.id}")
