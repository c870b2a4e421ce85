"""Change-event fan-out to WebSocket clients.

The service layer only ever publishes; it never reads from the channel.
``ConnectionManager`` is the production broadcaster: it keeps the set of
sockets connected to ``/ws/user-layers`` and sends each event to all of
them. A socket that fails to receive is dropped.

Messages have the shape ``{"event": <name>, "data": <payload>}`` where
name is one of ``layerCreated``, ``layerUpdated`` or ``layerDeleted``.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Literal, Protocol

from fastapi import encoders
from loguru import logger

if TYPE_CHECKING:
    from fastapi import WebSocket

LayerEvent = Literal["layerCreated", "layerUpdated", "layerDeleted"]


class BroadcasterProtocol(Protocol):
    """Publish-only channel for layer change events."""

    async def publish(self, event: LayerEvent, payload: Any) -> None: ...


class ConnectionManager(BroadcasterProtocol):
    """Manages WebSocket connections for layer change events."""

    def __init__(self) -> None:
        self.active_connections: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(
            "WebSocket connected. Total connections: {}",
            len(self.active_connections),
        )

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(
            "WebSocket disconnected. Total connections: {}",
            len(self.active_connections),
        )

    async def publish(self, event: LayerEvent, payload: Any) -> None:
        """Send one event to every connected client."""
        if not self.active_connections:
            return

        message = encoders.jsonable_encoder({"event": event, "data": payload})
        disconnected = set()

        async with self._lock:
            for connection in self.active_connections:
                try:
                    await connection.send_json(message)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to send {} to websocket: {}", event, exc)
                    disconnected.add(connection)

            self.active_connections -= disconnected

    async def close(self) -> None:
        """Close every open socket, used on application shutdown."""
        async with self._lock:
            connections = list(self.active_connections)
            self.active_connections.clear()
        for connection in connections:
            try:
                await connection.close()
            except RuntimeError as exc:
                logger.debug("WebSocket already closed: {}", exc)
