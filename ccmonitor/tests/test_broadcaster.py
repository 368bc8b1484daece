import asyncio
import json
import unittest

from starlette.websockets import WebSocketState

from ccmonitor.models import Stats, WsMessage
from ccmonitor.services.broadcaster import LiveBroadcaster


class _Listener:
    def __init__(self, *, fail: bool = False, state: WebSocketState = WebSocketState.CONNECTED) -> None:
        self.fail = fail
        self.client_state = state
        self.application_state = WebSocketState.CONNECTED
        self.received: list[dict] = []
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.received.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True


class _SlowListener(_Listener):
    def __init__(self, broadcaster: LiveBroadcaster, late: _Listener) -> None:
        super().__init__()
        self.broadcaster = broadcaster
        self.late = late

    async def send_text(self, data: str) -> None:
        # Registration changes while a publish is in progress.
        self.broadcaster.add_listener(self.late)
        self.broadcaster.remove_listener(self)
        await asyncio.sleep(0)
        await super().send_text(data)


class LiveBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.broadcaster = LiveBroadcaster()
        self.broadcaster.open()

    async def test_delivers_to_every_open_listener(self) -> None:
        a, b = _Listener(), _Listener()
        self.broadcaster.add_listener(a)
        self.broadcaster.add_listener(b)

        sent = await self.broadcaster.publish_stats(Stats(totalSessions=2))

        self.assertEqual(sent, 2)
        for listener in (a, b):
            self.assertEqual(listener.received, [{"type": "stats_update", "payload": {
                "totalSessions": 2, "totalEvents": 0, "totalTokens": 0, "totalCost": 0.0, "mcpToolsUsed": 0,
            }}])

    async def test_failed_listener_is_dropped(self) -> None:
        good, bad = _Listener(), _Listener(fail=True)
        self.broadcaster.add_listener(good)
        self.broadcaster.add_listener(bad)

        self.assertEqual(await self.broadcaster.publish(WsMessage(type="event", payload={"id": 1})), 1)
        self.assertEqual(self.broadcaster.listener_count, 1)
        self.assertEqual(len(good.received), 1)

    async def test_closed_channel_is_skipped_and_removed(self) -> None:
        gone = _Listener(state=WebSocketState.DISCONNECTED)
        self.broadcaster.add_listener(gone)

        self.assertEqual(await self.broadcaster.publish(WsMessage(type="event")), 0)
        self.assertEqual(gone.received, [])
        self.assertEqual(self.broadcaster.listener_count, 0)

    async def test_registration_during_publish_is_safe(self) -> None:
        late = _Listener()
        slow = _SlowListener(self.broadcaster, late)
        self.broadcaster.add_listener(slow)

        sent = await self.broadcaster.publish(WsMessage(type="event", payload={"id": 1}))

        self.assertEqual(sent, 1)
        self.assertEqual(late.received, [])
        await self.broadcaster.publish(WsMessage(type="event", payload={"id": 2}))
        self.assertEqual(late.received, [{"type": "event", "payload": {"id": 2}}])
        self.assertEqual(len(slow.received), 1)

    async def test_no_replay_for_late_listeners(self) -> None:
        await self.broadcaster.publish(WsMessage(type="event", payload={"id": 1}))
        late = _Listener()
        self.broadcaster.add_listener(late)
        self.assertEqual(late.received, [])

    async def test_close_stops_delivery(self) -> None:
        listener = _Listener()
        self.broadcaster.add_listener(listener)
        await self.broadcaster.close()

        self.assertTrue(listener.closed)
        self.assertFalse(self.broadcaster.is_open)
        self.assertEqual(await self.broadcaster.publish(WsMessage(type="event")), 0)
        self.assertEqual(listener.received, [])


if __name__ == "__main__":
    unittest.main()
