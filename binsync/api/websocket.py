from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from binsync.broadcast import ALL_TOPICS, InsightBroadcaster

router = APIRouter()


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event)


@router.websocket("/ws/events")
async def events_ws(websocket: WebSocket, topic: str = ALL_TOPICS) -> None:
    broadcaster: InsightBroadcaster = websocket.app.state.engine.broadcaster
    await websocket.accept()
    queue = broadcaster.subscribe(topic)
    sender = asyncio.create_task(_forward(websocket, queue))

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await sender
        broadcaster.unsubscribe(topic, queue)
