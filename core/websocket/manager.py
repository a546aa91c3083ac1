"""
PostureCare WebSocket Connection Manager

Tracks live pose streams and the watchers following them.
Each user may have several stream connections (one per open tab/device) and
any number of read-only watchers subscribed to the user's posture room.
"""

import asyncio
import logging
import json
import uuid
from typing import Dict, Set, Optional, Any, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from core.config import settings

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """WebSocket message types."""
    # System messages
    PING = "ping"
    PONG = "pong"
    AUTH_SUCCESS = "auth_success"
    ERROR = "error"

    # Client -> server
    FRAME = "frame"
    CAPTURE_BASELINE = "capture_baseline"
    CLEAR_BASELINE = "clear_baseline"
    RESET_COUNTS = "reset_counts"
    SET_ENABLED = "set_enabled"

    # Server -> client
    POSTURE_UPDATE = "posture_update"
    FRAME_REJECTED = "frame_rejected"
    BASELINE_CAPTURED = "baseline_captured"
    BASELINE_FAILED = "baseline_failed"
    BASELINE_CLEARED = "baseline_cleared"
    STATUS_UPDATE = "status_update"


class ClientRole(str, Enum):
    """What a connection is for."""
    STREAM = "stream"    # sends frames, receives its own replies
    WATCHER = "watcher"  # receives room broadcasts only


@dataclass
class WebSocketMessage:
    """Envelope for every message in either direction: {type, payload, timestamp}."""
    type: str
    payload: Any = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        return json.dumps({
            "type": getattr(self.type, "value", self.type),
            "payload": self.payload,
            "timestamp": self.timestamp,
        })

    @classmethod
    def from_json(cls, data: str) -> "WebSocketMessage":
        """
        Parse a client message.

        Raises:
            ValueError: not JSON, not an object, or no string ``type``
        """
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError("message must be a JSON object")
        msg_type = parsed.get("type")
        if not isinstance(msg_type, str):
            raise ValueError("message needs a string 'type'")
        return cls(type=msg_type, payload=parsed.get("payload"))


@dataclass
class ConnectedClient:
    """One open socket."""
    websocket: WebSocket
    user_id: str
    client_id: str
    role: ClientRole = ClientRole.STREAM
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: Set[str] = field(default_factory=set)

    def is_connected(self) -> bool:
        return self.websocket.client_state == WebSocketState.CONNECTED


class ConnectionManager:
    """
    Registry of open sockets.

    Features:
    - Per-user index of stream and watcher connections
    - Room broadcasts (e.g. "posture:alice")
    - Dead-socket sweep on a heartbeat
    """

    def __init__(self, max_connections: int = None):
        self.max_connections = max_connections or settings.WS_MAX_CONNECTIONS

        # client_id -> ConnectedClient
        self._connections: Dict[str, ConnectedClient] = {}

        # user_id -> client_ids
        self._by_user: Dict[str, Set[str]] = {}

        # room_id -> client_ids
        self._rooms: Dict[str, Set[str]] = {}

        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None

        logger.info(f"🔌 ConnectionManager initialized (max: {self.max_connections})")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_client(self, client_id: str) -> Optional[ConnectedClient]:
        return self._connections.get(client_id)

    def stream_count(self, user_id: str) -> int:
        """Open stream (non-watcher) connections for a user."""
        return sum(
            1 for cid in self._by_user.get(user_id, ())
            if self._connections[cid].role == ClientRole.STREAM
        )

    # ═══════════════════════════════════════════════════════════════════════════
    # CONNECT / DISCONNECT
    # ═══════════════════════════════════════════════════════════════════════════

    async def connect(
        self,
        websocket: WebSocket,
        user_id: str,
        role: ClientRole = ClientRole.STREAM,
        rooms: Iterable[str] = (),
    ) -> ConnectedClient:
        """
        Accept a socket, join its rooms, then confirm with auth_success.

        Rooms are joined before the confirmation, so every broadcast sent
        after a client sees auth_success reaches it.

        Raises:
            ConnectionError: server at capacity (socket closed with 1013)
        """
        if self.connection_count >= self.max_connections:
            await websocket.close(code=1013, reason="Server at capacity")
            raise ConnectionError("Maximum connections reached")

        await websocket.accept()

        client = ConnectedClient(
            websocket=websocket,
            user_id=user_id,
            client_id=f"{role.value}:{user_id}:{uuid.uuid4().hex[:8]}",
            role=role,
            rooms=set(rooms),
        )

        async with self._lock:
            self._connections[client.client_id] = client
            self._by_user.setdefault(user_id, set()).add(client.client_id)
            for room_id in client.rooms:
                self._rooms.setdefault(room_id, set()).add(client.client_id)

        logger.info(f"✅ Client connected: {client.client_id}")

        await self.send_to_client(client.client_id, WebSocketMessage(
            type=MessageType.AUTH_SUCCESS,
            payload={
                "client_id": client.client_id,
                "user_id": user_id,
                "role": role.value,
                "rooms": sorted(client.rooms),
            },
        ))
        return client

    async def disconnect(self, client_id: str) -> Optional[ConnectedClient]:
        """Forget a client. Returns it, or None if it was already gone."""
        async with self._lock:
            client = self._connections.pop(client_id, None)
            if client is None:
                return None

            user_clients = self._by_user.get(client.user_id)
            if user_clients is not None:
                user_clients.discard(client_id)
                if not user_clients:
                    del self._by_user[client.user_id]

            for room_id in client.rooms:
                members = self._rooms.get(room_id)
                if members is None:
                    continue
                members.discard(client_id)
                if not members:
                    del self._rooms[room_id]

        logger.info(f"👋 Client disconnected: {client_id}")
        return client

    # ═══════════════════════════════════════════════════════════════════════════
    # SENDING
    # ═══════════════════════════════════════════════════════════════════════════

    async def send_to_client(self, client_id: str, message: WebSocketMessage) -> bool:
        """Send to one client; a failed send drops the client."""
        client = self._connections.get(client_id)
        if not client or not client.is_connected():
            return False

        try:
            await client.websocket.send_text(message.to_json())
        except Exception as e:
            logger.error(f"Failed to send to {client_id}: {e}")
            await self.disconnect(client_id)
            return False

        client.last_activity = datetime.now(timezone.utc)
        return True

    async def broadcast_to_room(self, room_id: str, message: WebSocketMessage) -> int:
        """Send to every member of a room. Returns the number reached."""
        sent_count = 0
        for client_id in list(self._rooms.get(room_id, ())):
            if await self.send_to_client(client_id, message):
                sent_count += 1
        return sent_count

    # ═══════════════════════════════════════════════════════════════════════════
    # RECEIVING
    # ═══════════════════════════════════════════════════════════════════════════

    async def handle_message(
        self,
        client_id: str,
        raw_message: str,
        handler: Callable[[str, WebSocketMessage], Awaitable[Any]] = None
    ):
        """Parse one incoming message, answer pings, pass the rest to ``handler``."""
        try:
            message = WebSocketMessage.from_json(raw_message)
        except ValueError as e:
            await self.send_to_client(client_id, WebSocketMessage(
                type=MessageType.ERROR,
                payload={"error": f"Invalid message: {e}"}
            ))
            return

        client = self._connections.get(client_id)
        if client:
            client.last_activity = datetime.now(timezone.utc)

        if message.type == MessageType.PING.value:
            await self.send_to_client(client_id, WebSocketMessage(type=MessageType.PONG))
            return

        if handler is None:
            return

        try:
            await handler(client_id, message)
        except Exception as e:
            logger.error(f"Error handling {message.type} from {client_id}: {e}")
            await self.send_to_client(client_id, WebSocketMessage(
                type=MessageType.ERROR,
                payload={"error": "Internal error"}
            ))

    # ═══════════════════════════════════════════════════════════════════════════
    # HEARTBEAT
    # ═══════════════════════════════════════════════════════════════════════════

    async def start_heartbeat(self, interval: int = None):
        """Periodically drop sockets that closed without a clean disconnect."""
        interval = interval or settings.WS_HEARTBEAT_INTERVAL

        async def heartbeat_loop():
            while True:
                await asyncio.sleep(interval)
                for client_id, client in list(self._connections.items()):
                    if not client.is_connected():
                        await self.disconnect(client_id)

        self._heartbeat_task = asyncio.create_task(heartbeat_loop())
        logger.info(f"💓 Heartbeat started (interval: {interval}s)")

    async def stop_heartbeat(self):
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    def get_stats(self) -> dict:
        streams = sum(1 for c in self._connections.values() if c.role == ClientRole.STREAM)
        return {
            "total_connections": self.connection_count,
            "streams": streams,
            "watchers": self.connection_count - streams,
            "unique_users": len(self._by_user),
            "rooms": len(self._rooms),
            "max_connections": self.max_connections
        }


# Global connection manager instance
connection_manager = ConnectionManager()


async def websocket_endpoint(
    websocket: WebSocket,
    user_id: str,
    handler: Callable[[str, WebSocketMessage], Awaitable[Any]] = None,
    role: ClientRole = ClientRole.STREAM,
    rooms: Iterable[str] = (),
    on_disconnect: Callable[[str, str], Awaitable[Any]] = None
):
    """
    Reusable WebSocket endpoint handler.

    Usage in router:
        @router.websocket("/ws/stream/{user_id}")
        async def ws_route(websocket: WebSocket, user_id: str):
            await websocket_endpoint(websocket, user_id, my_handler)

    Args:
        handler: Awaited with (client_id, message) for every non-ping message
        role: Stream or watcher
        rooms: Rooms joined before auth_success is sent
        on_disconnect: Awaited with (client_id, user_id) once the client is gone
    """
    try:
        client = await connection_manager.connect(websocket, user_id, role=role, rooms=rooms)
    except ConnectionError as e:
        logger.warning(f"⚠️ Rejected connection for {user_id}: {e}")
        return

    try:
        while True:
            data = await websocket.receive_text()
            await connection_manager.handle_message(client.client_id, data, handler)

    except WebSocketDisconnect:
        pass

    except Exception as e:
        logger.error(f"WebSocket error for {client.client_id}: {e}")

    finally:
        await connection_manager.disconnect(client.client_id)
        if on_disconnect:
            await on_disconnect(client.client_id, user_id)
