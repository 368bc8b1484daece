"""Push ingress and live update endpoints."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ccmonitor.models import WsMessage
from ccmonitor.services.event_processor import InvalidHookEventError, validate_hook_payload

logger = logging.getLogger("ccmonitor.ingress")

events_router = APIRouter(prefix="/api", tags=["events"])
live_router = APIRouter(tags=["live"])


def _get_event_processor(request: Request):
    processor = getattr(request.app.state, "event_processor", None)
    if not processor:
        raise HTTPException(status_code=503, detail="Event processor not initialized")
    return processor


@events_router.post("/events")
async def receive_hook_event(request: Request):
    """Store one hook record and push it to live listeners."""
    processor = _get_event_processor(request)
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Body must be a JSON object"})

    try:
        event = validate_hook_payload(payload)
    except InvalidHookEventError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    try:
        item = await processor.process_hook_event(event)
    except Exception:
        logger.exception(f"Error processing {event.hook_event_name} for session {event.session_id}")
        return JSONResponse(status_code=500, content={"error": "Failed to process event"})

    return {"success": True, "event": item.model_dump()}


@live_router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Register a listener; the current stats snapshot is sent on connect."""
    broadcaster = websocket.app.state.broadcaster
    store = websocket.app.state.store

    await websocket.accept()
    broadcaster.add_listener(websocket)
    try:
        stats = await store.get_stats()
        await websocket.send_text(WsMessage(type="stats_update", payload=stats.model_dump()).model_dump_json())
        # Inbound frames are ignored; the loop only detects disconnects.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.remove_listener(websocket)
