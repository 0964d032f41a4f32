"""
Registry of live client connections for real-time notification delivery.

The registry is owned by the running service (stored on ``app.state``) and
handed to whoever needs to push to a user. A user may hold several
connections (multiple devices); pushes go to all of them.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Set
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

# Connections silent for longer than this are dropped by cleanup_stale()
CONNECTION_TIMEOUT_SECONDS = 30


class ConnectionRegistry:
    """Maps user ids to their live connections (anything with ``send_text``)."""

    def __init__(self, timeout_seconds: int = CONNECTION_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self.active_connections: Dict[int, Set[Any]] = {}
        self.connection_timestamps: Dict[Any, datetime] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: int, connection: Any) -> None:
        """
        Register a live connection for a user.

        Args:
            user_id: ID of the user
            connection: Connection object exposing ``send_text``
        """
        async with self._lock:
            self.active_connections.setdefault(user_id, set()).add(connection)
            self.connection_timestamps[connection] = datetime.utcnow()
            logger.info(
                f"Connection registered for user {user_id} "
                f"(total connections: {len(self.active_connections[user_id])})"
            )

    async def unregister(self, user_id: int, connection: Any) -> None:
        """Remove a connection for a user. Unknown connections are ignored."""
        async with self._lock:
            self._discard(user_id, connection)
            logger.info(f"Connection unregistered for user {user_id}")

    def _discard(self, user_id: int, connection: Any) -> None:
        # Caller holds the lock
        if user_id in self.active_connections:
            self.active_connections[user_id].discard(connection)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
        self.connection_timestamps.pop(connection, None)

    async def send_if_present(self, user_id: int, message: dict) -> bool:
        """
        Send a message to every live connection of a user.

        Connections that fail to send are dropped. Never raises.

        Args:
            user_id: ID of the user
            message: JSON-serializable dict

        Returns:
            True if the message reached at least one connection
        """
        async with self._lock:
            connections = list(self.active_connections.get(user_id, ()))
        if not connections:
            return False

        message_json = json.dumps(message, default=str)
        sent = False
        dead = []
        for connection in connections:
            try:
                await connection.send_text(message_json)
                sent = True
            except Exception as e:
                logger.warning(f"Error sending message to user {user_id}: {e}")
                dead.append(connection)

        async with self._lock:
            now = datetime.utcnow()
            for connection in connections:
                if connection in dead:
                    self._discard(user_id, connection)
                elif connection in self.connection_timestamps:
                    self.connection_timestamps[connection] = now

        return sent

    async def connection_count(self, user_id: int) -> int:
        """Number of live connections for a user."""
        async with self._lock:
            return len(self.active_connections.get(user_id, ()))

    async def touch(self, connection: Any) -> None:
        """Record activity (ping or message) on a connection."""
        async with self._lock:
            if connection in self.connection_timestamps:
                self.connection_timestamps[connection] = datetime.utcnow()

    async def cleanup_stale(self) -> int:
        """
        Drop connections without activity inside the timeout window.

        Returns:
            Number of connections removed
        """
        threshold = datetime.utcnow() - timedelta(seconds=self.timeout_seconds)
        removed = 0
        async with self._lock:
            for user_id, connections in list(self.active_connections.items()):
                for connection in list(connections):
                    last_activity = self.connection_timestamps.get(connection)
                    if last_activity is None or last_activity < threshold:
                        self._discard(user_id, connection)
                        removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} stale connection(s)")
        return removed
