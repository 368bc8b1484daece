import json
import sqlite3
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from ccmonitor.db.sqlite_migrations import run_migrations
from ccmonitor.db.store import AggregateStore
from ccmonitor.pricing import calculate_cost
from ccmonitor.services.broadcaster import LiveBroadcaster
from ccmonitor.services.transcript_parser import TranscriptParser
from ccmonitor.services.transcript_reader import ReadResult


class _RecordingListener:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    async def send_text(self, data: str) -> None:
        self.messages.append(json.loads(data))

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]


def _user(uuid: str, text: str, ts: str = "2025-06-01T10:00:00.000Z") -> dict:
    return {
        "type": "user",
        "uuid": uuid,
        "timestamp": ts,
        "cwd": "/work/repo",
        "gitBranch": "main",
        "version": "1.0.40",
        "message": {"role": "user", "content": text},
    }


def _assistant(uuid: str, usage: dict, ts: str = "2025-06-01T10:00:05.000Z", model="claude-sonnet-4-20250514") -> dict:
    return {
        "type": "assistant",
        "uuid": uuid,
        "timestamp": ts,
        "cwd": "/work/repo",
        "message": {
            "model": model,
            "content": [{"type": "text", "text": f"reply {uuid}"}],
            "usage": usage,
        },
    }


def _lines(*records: dict) -> str:
    return "".join(json.dumps(r) + "\n" for r in records)


class TranscriptParserTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = AggregateStore(self.db)
        self.broadcaster = LiveBroadcaster()
        self.broadcaster.open()
        self.listener = _RecordingListener()
        self.broadcaster.add_listener(self.listener)
        self.parser = TranscriptParser(self.store, self.broadcaster)

        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name).resolve()

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    def _write(self, name: str, text: str, mode: str = "w") -> Path:
        path = self.root / name
        with path.open(mode, encoding="utf-8") as handle:
            handle.write(text)
        return path

    async def test_rereading_a_consumed_file_is_a_no_op(self) -> None:
        path = self._write("S-1.jsonl", _lines(
            _user("u-1", "hello"),
            _assistant("a-1", {"input_tokens": 100, "output_tokens": 10}),
        ))

        first = await self.parser.parse_file(path)
        before = await self.store.get_session("S-1")
        second = await self.parser.parse_file(path)
        after = await self.store.get_session("S-1")

        self.assertEqual(len(first), 2)
        self.assertEqual(second, [])
        self.assertEqual(before, after)
        self.assertEqual(await self.store.get_file_position(str(path)), path.stat().st_size)

    async def test_cursor_is_shared_across_path_spellings(self) -> None:
        (self.root / "projects").mkdir()
        (self.root / "alias").symlink_to(self.root / "projects", target_is_directory=True)
        real = self.root / "projects" / "S-1.jsonl"
        real.write_text(_lines(_user("u-1", "hello")), encoding="utf-8")

        self.assertEqual(len(await self.parser.parse_file(self.root / "alias" / "S-1.jsonl")), 1)
        self.assertEqual(await self.store.get_file_position(str(real)), real.stat().st_size)
        # No second cursor: nothing is read again from byte 0.
        self.assertEqual(await self.parser.reader.read(real), ReadResult(
            path=str(real), start=real.stat().st_size, end=real.stat().st_size,
        ))

    async def test_session_id_comes_from_the_file_name(self) -> None:
        path = self._write("abc-123.jsonl", _lines(_user("u-1", "hello")))
        events = await self.parser.parse_file(path)
        self.assertEqual(events[0].sessionId, "abc-123")
        session = await self.store.get_session("abc-123")
        self.assertEqual(session.projectPath, "/work/repo")
        self.assertEqual(session.gitBranch, "main")
        self.assertEqual(session.version, "1.0.40")

    async def test_same_uuid_in_two_files_is_counted_once(self) -> None:
        record = _assistant("shared", {"input_tokens": 1000, "output_tokens": 100})
        first = self._write("S-1.jsonl", _lines(record))
        resumed = self._write("S-2.jsonl", _lines(record))

        self.assertEqual(len(await self.parser.parse_file(first)), 1)
        self.assertEqual(await self.parser.parse_file(resumed), [])

        self.assertEqual(await self.store.events.count(), 1)
        self.assertIsNone(await self.store.get_session("S-2"))
        stats = await self.store.get_stats()
        self.assertEqual(stats.totalTokens, 1100)

    async def test_totals_equal_the_sum_of_records(self) -> None:
        usages = [
            {"input_tokens": 10, "output_tokens": 5, "cache_creation_input_tokens": 2, "cache_read_input_tokens": 100},
            {"input_tokens": 20, "output_tokens": 7, "cache_creation_input_tokens": 0, "cache_read_input_tokens": 300},
            {"input_tokens": 30, "output_tokens": 9, "cache_creation_input_tokens": 4, "cache_read_input_tokens": 0},
        ]
        path = self._write("S-1.jsonl", _lines(*(
            _assistant(f"a-{i}", usage, ts=f"2025-06-01T10:00:0{i}.000Z")
            for i, usage in enumerate(usages)
        )))

        await self.parser.parse_file(path)
        session = await self.store.get_session("S-1")

        self.assertEqual(session.totalInputTokens, sum(u["input_tokens"] + u["cache_read_input_tokens"] for u in usages))
        self.assertEqual(session.totalOutputTokens, sum(u["output_tokens"] for u in usages))
        self.assertEqual(session.totalCacheReadTokens, 400)
        self.assertEqual(session.totalCacheWriteTokens, 6)
        expected = sum(calculate_cost("claude-sonnet-4-20250514", u) for u in usages)
        self.assertAlmostEqual(session.totalCostUsd, expected)

    async def test_start_time_tracks_the_earliest_record(self) -> None:
        path = self._write("S-1.jsonl", _lines(
            _user("u-2", "later", ts="2025-06-01T11:00:00.000Z"),
            _user("u-1", "earlier", ts="2025-06-01T09:00:00.000Z"),
        ))
        await self.parser.parse_file(path)
        session = await self.store.get_session("S-1")
        self.assertEqual(session.startedAt, "2025-06-01T09:00:00.000Z")

    async def test_malformed_lines_are_skipped_and_cursor_advances(self) -> None:
        path = self._write(
            "S-1.jsonl",
            json.dumps(_user("u-1", "one")) + "\n"
            + "{not json at all\n"
            + "\n   \n"
            + json.dumps({"type": "assistant", "message": {"content": 42}}) + "\n"
            + json.dumps(_user("u-2", "two")) + "\n",
        )

        events = await self.parser.parse_file(path)

        self.assertEqual([e.content for e in events], ["one", "two"])
        self.assertEqual(await self.store.get_file_position(str(path)), path.stat().st_size)
        self.assertEqual(await self.parser.parse_file(path), [])

    async def test_unknown_record_types_are_ignored(self) -> None:
        path = self._write("S-1.jsonl", _lines(
            {"type": "summary", "summary": "Refactor", "leafUuid": "x"},
            _user("u-1", "hello"),
        ))
        events = await self.parser.parse_file(path)
        self.assertEqual(len(events), 1)

    async def test_truncated_file_is_reread_without_double_counting(self) -> None:
        usage = {"input_tokens": 100, "output_tokens": 10}
        path = self._write("S-1.jsonl", _lines(
            _assistant("a-1", usage),
            _assistant("a-2", usage),
            _assistant("a-3", usage),
        ))
        await self.parser.parse_file(path)

        # Recreated with a shorter body: one old record plus one new one.
        self._write("S-1.jsonl", _lines(_assistant("a-1", usage), _user("u-9", "new")))
        self.assertLess(path.stat().st_size, await self.store.get_file_position(str(path)))

        events = await self.parser.parse_file(path)

        self.assertEqual([e.content for e in events], ["new"])
        session = await self.store.get_session("S-1")
        self.assertEqual(session.totalInputTokens, 300)
        self.assertEqual(await self.store.get_file_position(str(path)), path.stat().st_size)

    async def test_appended_lines_are_read_incrementally(self) -> None:
        path = self._write("S-1.jsonl", _lines(_user("u-1", "one")))
        await self.parser.parse_file(path)
        self._write("S-1.jsonl", _lines(_user("u-2", "two")), mode="a")

        events = await self.parser.parse_file(path)
        self.assertEqual([e.content for e in events], ["two"])

    async def test_partial_trailing_line_waits_for_the_rest(self) -> None:
        complete = json.dumps(_user("u-2", "two"))
        path = self._write("S-1.jsonl", _lines(_user("u-1", "one")) + complete[:20])

        first = await self.parser.parse_file(path)
        self.assertEqual([e.content for e in first], ["one"])
        self.assertEqual(await self.store.get_file_position(str(path)), path.stat().st_size - 20)

        self._write("S-1.jsonl", complete[20:] + "\n", mode="a")
        second = await self.parser.parse_file(path)
        self.assertEqual([e.content for e in second], ["two"])

    async def test_complete_last_line_without_newline_is_read(self) -> None:
        path = self._write("S-1.jsonl", json.dumps(_user("u-1", "one")))
        events = await self.parser.parse_file(path)
        self.assertEqual(len(events), 1)
        self.assertEqual(await self.store.get_file_position(str(path)), path.stat().st_size)

    async def test_external_tools_update_tool_statistics(self) -> None:
        record = _assistant("a-1", {"input_tokens": 1})
        record["message"]["content"] = [
            {"type": "tool_use", "id": "t1", "name": "mcp__github__list_prs", "input": {}},
            {"type": "tool_use", "id": "t2", "name": "Bash", "input": {"command": "ls"}},
        ]
        path = self._write("S-1.jsonl", _lines(record))
        await self.parser.parse_file(path)

        stats = await self.store.get_tool_stats()
        self.assertEqual([s.toolName for s in stats], ["mcp__github__list_prs"])
        self.assertEqual(stats[0].serverName, "github")
        self.assertEqual(stats[0].invocationCount, 1)

    async def test_error_result_is_counted_as_tool_failure(self) -> None:
        call = _assistant("a-1", {"input_tokens": 1})
        call["message"]["content"] = [
            {"type": "tool_use", "id": "toolu_1", "name": "mcp__gh__x", "input": {}},
        ]
        result = _user("u-2", "", ts="2025-06-01T10:00:06.000Z")
        result["message"]["content"] = [
            {"type": "tool_result", "tool_use_id": "toolu_1", "is_error": True, "content": "boom"},
        ]
        path = self._write("S-1.jsonl", _lines(call, result))
        await self.parser.parse_file(path)

        rows = await self.store.tool_stats.get_for_session("S-1")
        self.assertEqual(
            [(r["tool_name"], r["invocation_count"], r["success_count"], r["error_count"]) for r in rows],
            [("mcp__gh__x", 1, 0, 1)],
        )

        # Re-reading the whole file after truncation changes nothing.
        self._write("S-1.jsonl", _lines(call, result))
        await self.store.set_file_position(str(path), path.stat().st_size + 100)
        await self.parser.parse_file(path)
        rows = await self.store.tool_stats.get_for_session("S-1")
        self.assertEqual((rows[0]["invocation_count"], rows[0]["error_count"]), (1, 1))

    async def test_broadcasts_events_session_start_and_stats(self) -> None:
        long_text = "z" * 800
        path = self._write("S-1.jsonl", _lines(_user("u-1", long_text), _user("u-2", "hi")))
        await self.parser.parse_file(path)

        self.assertEqual(self.listener.types(), ["event", "event", "session_start", "stats_update"])
        self.assertEqual(len(self.listener.messages[0]["payload"]["content"]), 500)
        self.assertEqual(self.listener.messages[2]["payload"]["id"], "S-1")
        self.assertEqual(self.listener.messages[3]["payload"]["totalEvents"], 2)

        self._write("S-1.jsonl", _lines(_user("u-3", "again")), mode="a")
        await self.parser.parse_file(path)
        self.assertEqual(self.listener.types()[4:], ["event", "stats_update"])

    async def test_process_entry_publishes_stats_per_event(self) -> None:
        item = await self.parser.process_entry(_user("u-1", "hi"), "S-1")
        self.assertIsNotNone(item)
        self.assertEqual(self.listener.types(), ["event", "stats_update"])
        self.assertIsNone(await self.parser.process_entry(_user("u-1", "hi"), "S-1"))

    async def test_storage_failure_leaves_cursor_in_place(self) -> None:
        path = self._write("S-1.jsonl", _lines(_user("u-1", "one")))

        async def _fail(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        self.store.record_event = _fail
        with self.assertRaises(sqlite3.OperationalError):
            await self.parser.parse_file(path)
        self.assertEqual(await self.store.get_file_position(str(path)), 0)


if __name__ == "__main__":
    unittest.main()
