"""Fan-out of live updates to connected WebSocket listeners."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from starlette.websockets import WebSocketState

from ccmonitor.models import EventItem, SessionSummary, Stats, WsMessage

logger = logging.getLogger("ccmonitor.ws")


class Listener(Protocol):
    async def send_text(self, data: str) -> None: ...


def _is_open(listener: Any) -> bool:
    for attr in ("client_state", "application_state"):
        state = getattr(listener, attr, None)
        if state is not None and state != WebSocketState.CONNECTED:
            return False
    return True


class LiveBroadcaster:
    """Best-effort, at-most-once delivery to the listeners connected right now.

    There is no buffering: a listener only sees messages published while it
    is registered. A listener whose send fails is dropped.
    """

    def __init__(self) -> None:
        self._listeners: set[Any] = set()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False
        listeners = list(self._listeners)
        self._listeners.clear()
        for listener in listeners:
            close = getattr(listener, "close", None)
            if close is None or not _is_open(listener):
                continue
            try:
                await close()
            except Exception as exc:
                logger.debug(f"Listener close failed: {exc}")

    def add_listener(self, listener: Listener) -> None:
        self._listeners.add(listener)
        logger.info(f"Client connected. Total clients: {len(self._listeners)}")

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.discard(listener)
            logger.info(f"Client disconnected. Total clients: {len(self._listeners)}")

    async def _send(self, listener: Any, data: str) -> bool:
        try:
            await listener.send_text(data)
            return True
        except Exception as exc:
            logger.warning(f"Dropping listener after send failure: {exc}")
            self._listeners.discard(listener)
            return False

    async def publish(self, message: WsMessage) -> int:
        """Deliver to every open listener. Returns how many received it."""
        if not self._open:
            return 0
        # Snapshot so listeners can come and go during the sends.
        targets = [listener for listener in list(self._listeners) if _is_open(listener)]
        for listener in self._listeners - set(targets):
            self._listeners.discard(listener)
        if not targets:
            return 0

        data = message.model_dump_json()
        results = await asyncio.gather(*(self._send(listener, data) for listener in targets))
        sent = sum(1 for ok in results if ok)
        if sent:
            logger.debug(f"Broadcast {message.type} to {sent} clients")
        return sent

    async def publish_event(self, event: EventItem) -> int:
        return await self.publish(WsMessage(type="event", payload=event.model_dump()))

    async def publish_session_start(self, session: SessionSummary) -> int:
        return await self.publish(WsMessage(type="session_start", payload=session.model_dump()))

    async def publish_session_end(self, session: SessionSummary) -> int:
        return await self.publish(WsMessage(type="session_end", payload=session.model_dump()))

    async def publish_stats(self, stats: Stats) -> int:
        return await self.publish(WsMessage(type="stats_update", payload=stats.model_dump()))
