"""Outbound client events.

Every event goes out as one JSON text frame:
``{"type": ..., "data": {...}, "timestamp": iso8601}``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, UTC
from typing import Any, Protocol

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Where a connection's outbound events go."""

    @property
    def connected(self) -> bool:
        ...

    async def send(self, event_type: str, data: dict[str, Any]) -> bool:
        ...


def envelope(event_type: str, data: dict[str, Any]) -> str:
    """Serialize an event."""
    return json.dumps({
        "type": event_type,
        "data": data,
        "timestamp": datetime.now(UTC).isoformat(),
    })


class WebSocketEventSink:
    """Sends events to a single WebSocket client."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def close(self) -> None:
        self._connected = False

    async def send(self, event_type: str, data: dict[str, Any]) -> bool:
        """Send an event.

        Args:
            event_type: Type of event (e.g., 'terminal_output')
            data: Event payload data

        Returns:
            True if sent, False if the client is gone
        """
        if not self._connected:
            return False
        try:
            await self.websocket.send_text(envelope(event_type, data))
            return True
        except Exception as e:
            logger.debug(f"Send of {event_type} failed, marking client gone: {e}")
            self._connected = False
            return False


class ConnectionManager:
    """Tracks live client connections."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> WebSocketEventSink:
        """Accept and track a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.append(websocket)
        return WebSocketEventSink(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)
