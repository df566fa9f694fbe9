"""Room-based WebSocket connection manager for live chat and contract pushes.

Each connection gets a ``client_id`` and can belong to any number of rooms:
``user:<id>`` (joined on connect) and ``contract:<id>`` (joined on request).
Every frame is a JSON envelope ``{"event": <name>, "data": {...}}``.
"""

import logging
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def contract_room(contract_id: str) -> str:
    return f"contract:{contract_id}"


class ConnectionManager:
    """Manages WebSocket connections with room support.

    Broadcasting targets a specific room so unrelated clients are not affected.
    """

    def __init__(self):
        # client_id -> WebSocket (for direct messaging)
        self.active_connections: dict[str, WebSocket] = {}
        # room name -> set of client_ids
        self.rooms: dict[str, set[str]] = {}

    async def connect(
        self, websocket: WebSocket, client_id: str, room: Optional[str] = None
    ):
        """Accept a WebSocket and optionally add it to a room."""
        await websocket.accept()
        self.active_connections[client_id] = websocket
        if room:
            self.join(client_id, room)

    def join(self, client_id: str, room: str):
        """Add a client to a named room."""
        if room not in self.rooms:
            self.rooms[room] = set()
        self.rooms[room].add(client_id)

    def leave(self, client_id: str, room: str):
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(client_id)
        if not members:
            del self.rooms[room]

    def in_room(self, client_id: str, room: str) -> bool:
        return client_id in self.rooms.get(room, set())

    def disconnect(self, client_id: str):
        """Remove a client from all rooms and drop its connection."""
        self.active_connections.pop(client_id, None)
        for room in [name for name, members in self.rooms.items() if client_id in members]:
            self.leave(client_id, room)

    async def send(self, client_id: str, event: str, data: dict):
        """Send one event to a specific client."""
        ws = self.active_connections.get(client_id)
        if ws:
            try:
                await ws.send_json({"event": event, "data": data})
            except Exception:
                logger.warning("Failed to send to client %s, removing", client_id)
                self.disconnect(client_id)

    async def emit(self, room: str, event: str, data: dict, exclude: Optional[str] = None):
        """Broadcast an event to every client in a room (optionally skipping one)."""
        client_ids = [cid for cid in self.rooms.get(room, set()) if cid != exclude]
        disconnected: list[str] = []
        for cid in client_ids:
            ws = self.active_connections.get(cid)
            if ws:
                try:
                    await ws.send_json({"event": event, "data": data})
                except Exception:
                    logger.warning("Broadcast failed for %s, removing", cid)
                    disconnected.append(cid)
        for cid in disconnected:
            self.disconnect(cid)
