"""ccmonitor FastAPI application: ingestion engine lifecycle and ingress endpoints."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ccmonitor import __version__, config
from ccmonitor.db import connection
from ccmonitor.db.sqlite_migrations import run_migrations
from ccmonitor.db.store import AggregateStore
from ccmonitor.observability import initialize as initialize_observability, shutdown as shutdown_observability
from ccmonitor.routers.events import events_router, live_router
from ccmonitor.services.broadcaster import LiveBroadcaster
from ccmonitor.services.event_processor import EventProcessor
from ccmonitor.services.transcript_parser import TranscriptParser
from ccmonitor.services.transcript_watcher import TranscriptWatcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ccmonitor")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ccmonitor starting up")
    initialize_observability(app)

    # 1. Open the store and bring the schema up to date
    db = await connection.get_connection()
    await run_migrations(db)
    store = AggregateStore(db)

    # 2. Live fan-out
    broadcaster = LiveBroadcaster()
    broadcaster.open()

    # 3. Pipelines
    parser = TranscriptParser(store, broadcaster)
    watcher = TranscriptWatcher(parser)

    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.event_processor = EventProcessor(store, broadcaster)
    app.state.watcher = watcher

    # 4. Watch transcripts
    if config.WATCH_ENABLED:
        await watcher.start()
    else:
        logger.info("Transcript watcher disabled (CCMONITOR_WATCH_ENABLED=false)")

    yield

    logger.info("ccmonitor shutting down")
    await watcher.stop()
    await broadcaster.close()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="ccmonitor",
    description="Ingestion and aggregation engine for Claude Code usage logs",
    version=__version__,
    lifespan=lifespan,
)

# CORS: allow the dashboard dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(events_router)
app.include_router(live_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "watcher", None)
    broadcaster = getattr(app.state, "broadcaster", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if watcher and watcher.is_running else "stopped",
        "clients": broadcaster.listener_count if broadcaster else 0,
    }
