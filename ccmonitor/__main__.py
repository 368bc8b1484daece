"""Command line entry point.

Usage:
  python -m ccmonitor serve
  python -m ccmonitor serve --port 4000
  python -m ccmonitor ingest                      # every transcript under the projects path
  python -m ccmonitor ingest path/to/session.jsonl
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from ccmonitor import config


async def _ingest(paths: list[Path]) -> int:
    from ccmonitor.db import connection
    from ccmonitor.db.sqlite_migrations import run_migrations
    from ccmonitor.db.store import AggregateStore
    from ccmonitor.services.broadcaster import LiveBroadcaster
    from ccmonitor.services.transcript_parser import TranscriptParser

    db = await connection.get_connection()
    try:
        await run_migrations(db)
        parser = TranscriptParser(AggregateStore(db), LiveBroadcaster())

        targets: list[Path] = []
        for path in paths or [config.CLAUDE_PROJECTS_PATH]:
            if path.is_dir():
                targets.extend(sorted(path.rglob(config.WATCH_PATTERN)))
            else:
                targets.append(path)

        total = 0
        for target in targets:
            total += len(await parser.parse_file(target))
        print(f"Ingested {total} new events from {len(targets)} files")
        return 0
    finally:
        await connection.close_connection()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ccmonitor", description="Claude Code usage ingestion engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the API server with the transcript watcher")
    serve.add_argument("--host", default=config.HOST)
    serve.add_argument("--port", type=int, default=config.PORT)
    serve.add_argument("--reload", action="store_true")

    ingest = sub.add_parser("ingest", help="One-shot import of transcript files")
    ingest.add_argument("paths", nargs="*", type=Path)

    args = parser.parse_args(argv)

    if args.command == "serve":
        import uvicorn

        uvicorn.run("ccmonitor.main:app", host=args.host, port=args.port, reload=args.reload)
        return 0

    logging.basicConfig(level=logging.INFO)
    return asyncio.run(_ingest(args.paths))


if __name__ == "__main__":
    raise SystemExit(main())
