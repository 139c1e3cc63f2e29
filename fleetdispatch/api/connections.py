"""Registry of open WebSocket connections."""

import asyncio
from typing import Any

from fastapi import WebSocket

from fleetdispatch.utils.logging import get_logger

logger = get_logger(__name__)

# Going Away
SHUTDOWN_CLOSE_CODE = 1001


class ConnectionManager:
    """Manages WebSocket connections.

    Owned by the dispatch core, which closes whatever is still open when it
    stops.
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}
        self.topics: dict[str, str] = {}
        self._send_locks: dict[str, asyncio.Lock] = {}

    async def connect(self, connection_id: str, topic: str, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections[connection_id] = websocket
        self.topics[connection_id] = topic
        self._send_locks[connection_id] = asyncio.Lock()
        logger.info("websocket_connected", connection_id=connection_id, topic=topic)

    def disconnect(self, connection_id: str) -> None:
        """Remove a WebSocket connection."""
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]
            topic = self.topics.pop(connection_id, None)
            self._send_locks.pop(connection_id, None)
            logger.info("websocket_disconnected", connection_id=connection_id, topic=topic)

    async def send_message(self, connection_id: str, message: dict[str, Any]) -> None:
        """Send a message to a specific connection."""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return

        # Event forwarding and ping replies share the socket
        async with self._send_locks[connection_id]:
            await websocket.send_json(message)

    def connection_count(self, topic: str | None = None) -> int:
        if topic is None:
            return len(self.active_connections)
        return sum(1 for t in self.topics.values() if t == topic)

    async def close_all(self, code: int = SHUTDOWN_CLOSE_CODE) -> None:
        """Close every open connection and forget it."""
        for connection_id, websocket in list(self.active_connections.items()):
            try:
                await websocket.close(code=code)
            except Exception as e:
                # Already gone; the handler cleans up after itself.
                logger.warning(
                    "websocket_close_failed",
                    connection_id=connection_id,
                    error=str(e),
                )
            self.disconnect(connection_id)

        logger.info("websocket_connections_closed", code=code)
