import json
import types
import unittest

import aiosqlite
from fastapi import HTTPException
from fastapi.responses import JSONResponse

from ccmonitor.db.sqlite_migrations import run_migrations
from ccmonitor.db.store import AggregateStore
from ccmonitor.routers import events as events_router
from ccmonitor.services.broadcaster import LiveBroadcaster
from ccmonitor.services.event_processor import EventProcessor


class _FakeRequest:
    def __init__(self, app, body) -> None:
        self.app = app
        self._body = body

    async def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class _FailingProcessor:
    async def process_hook_event(self, event):
        raise RuntimeError("database is locked")


class EventsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = AggregateStore(self.db)
        broadcaster = LiveBroadcaster()
        broadcaster.open()
        self.app = types.SimpleNamespace(state=types.SimpleNamespace(
            store=self.store,
            broadcaster=broadcaster,
            event_processor=EventProcessor(self.store, broadcaster),
        ))

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_stores_valid_event(self) -> None:
        payload = await events_router.receive_hook_event(_FakeRequest(self.app, {
            "session_id": "S-1",
            "hook_event_name": "PostToolUse",
            "tool_name": "Bash",
            "tool_input": {"command": "ls"},
        }))

        self.assertTrue(payload["success"])
        self.assertEqual(payload["event"]["toolName"], "Bash")
        self.assertEqual(payload["event"]["content"], '{"command": "ls"}')
        self.assertEqual(await self.store.events.count(), 1)

    async def test_missing_fields_is_400(self) -> None:
        response = await events_router.receive_hook_event(_FakeRequest(self.app, {"session_id": "S-1"}))
        self.assertIsInstance(response, JSONResponse)
        self.assertEqual(response.status_code, 400)
        self.assertIn("error", json.loads(response.body))
        self.assertEqual(await self.store.events.count(), 0)

    async def test_invalid_json_is_400(self) -> None:
        request = _FakeRequest(self.app, json.JSONDecodeError("bad", "{", 0))
        response = await events_router.receive_hook_event(request)
        self.assertEqual(response.status_code, 400)

    async def test_storage_failure_is_500(self) -> None:
        self.app.state.event_processor = _FailingProcessor()
        response = await events_router.receive_hook_event(_FakeRequest(self.app, {
            "session_id": "S-1",
            "hook_event_name": "Stop",
        }))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(json.loads(response.body), {"error": "Failed to process event"})

    async def test_uninitialized_processor_is_503(self) -> None:
        app = types.SimpleNamespace(state=types.SimpleNamespace())
        with self.assertRaises(HTTPException) as ctx:
            await events_router.receive_hook_event(_FakeRequest(app, {}))
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
