"""
WebSocket connection groups, one per transport type.
"""

from typing import Any, Protocol

from fastapi import WebSocket

from relay.config.logging import get_logger
from relay.v1.realtime.sessions import TransportType

logger = get_logger(__name__)


class Transport(Protocol):
    """Emits events to individual sockets or to every socket it holds."""

    async def emit(self, socket_id: str, event: str, data: Any) -> bool:
        ...

    async def broadcast(self, event: str, data: Any) -> int:
        ...


class WebSocketTransport:
    """Live WebSocket connections of one transport type."""

    def __init__(self, transport_type: TransportType):
        self.transport_type = transport_type
        self._connections: dict[str, WebSocket] = {}

    def connect(self, socket_id: str, websocket: WebSocket) -> None:
        self._connections[socket_id] = websocket

    def disconnect(self, socket_id: str) -> None:
        self._connections.pop(socket_id, None)

    async def emit(self, socket_id: str, event: str, data: Any) -> bool:
        """Send one event to a socket; False if it is gone or the send failed."""
        websocket = self._connections.get(socket_id)
        if websocket is None:
            return False

        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as e:
            logger.warning(
                "Failed to emit to socket",
                socket_id=socket_id,
                transport=self.transport_type.value,
                error=str(e),
            )
            return False
        return True

    async def broadcast(self, event: str, data: Any) -> int:
        """Send an event to every socket, returning the number reached."""
        delivered = 0
        for socket_id in list(self._connections):
            if await self.emit(socket_id, event, data):
                delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._connections)
