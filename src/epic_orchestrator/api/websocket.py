"""WebSocket support for real-time updates.

Every notification the engine publishes is forwarded to connected clients
as ``{"event": ..., "data": <snapshot>, "timestamp": ...}``. Events include:
- epic.synced / epic.sync_failed
- issue.completed / phase.completed
- pipeline.updated / sessions.updated / agents.updated
- monitoring.started / monitoring.stopped
"""

import json
from datetime import datetime
from typing import Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()


class ConnectionManager:
    """Manages WebSocket connections for broadcasting events."""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        """Remove a WebSocket connection."""
        self.active_connections.discard(websocket)

    @staticmethod
    def _message(event: str, data: dict) -> str:
        return json.dumps({
            "event": event,
            "data": data,
            "timestamp": datetime.now().isoformat(),
        }, default=str)

    async def broadcast(self, event: str, data: dict):
        """Broadcast an event to all connected clients.

        Args:
            event: Event name (e.g., "epic.synced")
            data: Event payload
        """
        message = self._message(event, data)

        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_text(message)
            except Exception:
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)

    async def send_personal(self, websocket: WebSocket, event: str, data: dict):
        """Send an event to a specific client."""
        await websocket.send_text(self._message(event, data))


@router.websocket("/events")
async def websocket_events(websocket: WebSocket):
    """Stream engine notifications.

    The first message carries the current snapshot. Clients may send
    ``{"type": "ping"}`` and get a ``pong`` back.
    """
    manager: ConnectionManager = websocket.app.state.connections
    orchestrator = websocket.app.state.orchestrator
    await manager.connect(websocket)

    try:
        await manager.send_personal(
            websocket, "connected", orchestrator.snapshot().model_dump(mode="json"),
        )

        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await manager.send_personal(websocket, "pong", {})

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
