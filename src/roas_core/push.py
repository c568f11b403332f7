"""WebSocket push channel for the live dashboard.

Every connected client receives the cached "today" payload on connect
and after each cache refresh:

    {"event": "data-update", "data": {"dashboardData": ..., "fbData": ...}}
    {"event": "data-error", "data": {"message": "Cached data is not available yet"}}
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fastapi import WebSocket


logger = logging.getLogger(__name__)


class PushEvent(str, Enum):
    DATA_UPDATE = "data-update"
    DATA_ERROR = "data-error"


@dataclass
class ConnectionInfo:
    id: int
    websocket: WebSocket
    connected_at: datetime = field(default_factory=datetime.now)
    message_count: int = 0


class ConnectionManager:
    """Tracks open WebSocket connections and fans messages out to them."""

    def __init__(self) -> None:
        self._connections: dict[int, ConnectionInfo] = {}
        self._lock = asyncio.Lock()
        self._next_connection_id = 1

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> ConnectionInfo:
        await websocket.accept()

        async with self._lock:
            conn_info = ConnectionInfo(id=self._next_connection_id, websocket=websocket)
            self._next_connection_id += 1
            self._connections[conn_info.id] = conn_info

        logger.info("WebSocket connected (total: %s)", self.connection_count)
        return conn_info

    async def disconnect(self, conn_info: ConnectionInfo) -> None:
        async with self._lock:
            self._connections.pop(conn_info.id, None)
        logger.info("WebSocket disconnected (remaining: %s)", self.connection_count)

    @staticmethod
    def _message(event: PushEvent, data: dict[str, Any]) -> str:
        return json.dumps({"event": event.value, "data": data}, default=str)

    async def send(
        self, conn_info: ConnectionInfo, event: PushEvent, data: dict[str, Any]
    ) -> bool:
        try:
            await conn_info.websocket.send_text(self._message(event, data))
            conn_info.message_count += 1
            return True
        except Exception as exc:
            logger.debug("Send to connection %s failed: %s", conn_info.id, exc)
            return False

    async def broadcast(self, event: PushEvent, data: dict[str, Any]) -> int:
        """Send to every connection, dropping the ones that fail.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            connections = list(self._connections.values())

        if not connections:
            return 0

        results = await asyncio.gather(
            *(self.send(conn_info, event, data) for conn_info in connections)
        )

        dead = [conn for conn, ok in zip(connections, results) if not ok]
        if dead:
            async with self._lock:
                for conn_info in dead:
                    self._connections.pop(conn_info.id, None)
            logger.info("Dropped %s dead WebSocket connections", len(dead))

        return sum(1 for ok in results if ok)
