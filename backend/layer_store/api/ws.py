"""WebSocket endpoint streaming user layer change events."""

from __future__ import annotations

import json

import fastapi
from loguru import logger

from layer_store.api import deps
from layer_store.services import broadcast

router = fastapi.APIRouter(prefix="/ws", tags=["websocket"])


@router.websocket("/user-layers")
async def user_layer_events(
    websocket: fastapi.WebSocket,
    manager: broadcast.ConnectionManager = fastapi.Depends(deps.get_broadcaster),  # noqa: B008
) -> None:
    """Stream ``layerCreated``/``layerUpdated``/``layerDeleted`` events.

    Clients only listen; the one message they may send is
    ``{"type": "ping"}``, answered with ``{"type": "pong"}``.
    """
    await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                logger.debug("Ignoring websocket message: {}", message)
    except fastapi.WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    finally:
        await manager.disconnect(websocket)
