"""
Realtime endpoints.

``/ws?channels=a,b`` subscribes a websocket to hub channels and forwards
every event as JSON.  Channels can be changed at runtime by sending
``{"action": "subscribe" | "unsubscribe", "channels": [...]}``.
``/websocket/status`` reports hub statistics.
"""

import asyncio
import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ecotrace_api.app.core.realtime import hub
from ecotrace_api.app.core.timeutils import to_iso

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_channels(raw: str):
    return [channel.strip() for channel in raw.split(",") if channel.strip()]


async def _forward(websocket: WebSocket, subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, channels: str = Query("")):
    await websocket.accept()
    wanted = set(_parse_channels(channels))
    if not wanted:
        await websocket.send_json({"type": "error", "message": "No channels requested"})
        await websocket.close(code=1008)
        return

    subscription = hub.subscribe(wanted)
    await websocket.send_json(
        {"type": "subscribed", "channels": sorted(wanted), "timestamp": to_iso()}
    )
    forwarder = asyncio.create_task(_forward(websocket, subscription))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Expected a JSON object"})
                continue
            action = message.get("action")
            requested = message.get("channels") or []
            if not isinstance(requested, list) or not all(isinstance(c, str) for c in requested):
                await websocket.send_json({"type": "error", "message": "channels must be a list of names"})
                continue
            requested = set(requested)
            if action == "subscribe":
                wanted |= requested
            elif action == "unsubscribe":
                wanted -= requested
            else:
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})
                continue
            hub.unsubscribe(subscription)
            forwarder.cancel()
            if not wanted:
                await websocket.close()
                return
            subscription = hub.subscribe(wanted)
            forwarder = asyncio.create_task(_forward(websocket, subscription))
            await websocket.send_json(
                {"type": "subscribed", "channels": sorted(wanted), "timestamp": to_iso()}
            )
    except WebSocketDisconnect:
        logger.debug("Websocket client disconnected")
    finally:
        forwarder.cancel()
        hub.unsubscribe(subscription)


@router.get("/websocket/status")
async def websocket_status():
    return {"success": True, "websocket": hub.get_stats(), "timestamp": to_iso()}
