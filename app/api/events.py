# app/api/events.py
"""
Local monitoring endpoints for the realtime event channel.

    GET /api/events     recent-event window
    WS  /ws/events      recent window, then live events
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from app.api.deps import get_events
from app.core.events import EventChannel

logger = logging.getLogger("ivr-flow-engine.api.events")
router = APIRouter()
ws_router = APIRouter()


@router.get("/", summary="Recent call events")
async def recent_events(
    limit: int = Query(50, ge=1, le=1000),
    events: EventChannel = Depends(get_events),
):
    return {
        "state": events.state.value,
        "events": events.recent_events(limit),
    }


@ws_router.websocket("/ws/events")
async def stream_events(websocket: WebSocket):
    channel: EventChannel = websocket.app.state.events
    await websocket.accept()
    queue = channel.subscribe()

    async def forward():
        while True:
            await websocket.send_json(await queue.get())

    async def watch_close():
        # returns once the client goes away
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(forward()), asyncio.create_task(watch_close())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Event stream closed with error: %s", exc)
    finally:
        for task in tasks:
            task.cancel()
        channel.unsubscribe(queue)
        logger.debug("Event subscriber disconnected")
