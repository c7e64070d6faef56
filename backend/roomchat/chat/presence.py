"""Presence registry: user id -> set of open connection ids.

A user is online while the set is non-empty. Transitions are reported only
when the set goes from empty to non-empty (first connection) or back to
empty (last connection closed). The registry also remembers the rooms each
online user joined, so the offline event reaches all of them and not only
the room of the connection that closed last.

Thread Safety:
    Designed for a single asyncio event loop. Every mutation runs to
    completion without an ``await``, so a connect and a disconnect for the
    same user can never interleave and lose an entry.
"""
import logging
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Tracks which users currently have at least one open connection."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def add(self, user_id: str, connection_id: str, room_id: Optional[str] = None) -> bool:
        """Register a connection. Returns True if the user just came online."""
        connections = self._connections.setdefault(user_id, set())
        came_online = not connections
        connections.add(connection_id)
        if room_id is not None:
            self._rooms.setdefault(user_id, set()).add(room_id)
        if came_online:
            logger.debug("[Presence] %s online", user_id)
        return came_online

    def remove(self, user_id: str, connection_id: str) -> bool:
        """Deregister a connection. Returns True if the user just went offline.

        Safe to call more than once or for an unknown connection.
        """
        connections = self._connections.get(user_id)
        if not connections or connection_id not in connections:
            return False
        connections.discard(connection_id)
        if connections:
            return False
        del self._connections[user_id]
        self._rooms.pop(user_id, None)
        logger.debug("[Presence] %s offline", user_id)
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connections_of(self, user_id: str) -> Set[str]:
        return set(self._connections.get(user_id, ()))

    def rooms_of(self, user_id: str) -> Set[str]:
        """Rooms the user joined since coming online."""
        return set(self._rooms.get(user_id, ()))

    def online_users(self) -> List[str]:
        return sorted(self._connections)
