"""Room registry, channel membership and broadcast fanout.

Rooms are persisted (get-or-create by logical key) together with their
denormalized ``lastMessage`` snapshot. Membership is in-memory: each open
connection belongs to at most one room, and idle connections (notification
listeners) belong to none.

Performance Notes:
    - Fanout uses asyncio.gather() for concurrent delivery
    - Connections whose send fails are pruned from their room during fanout

Ordering:
    ``write_lock(room_id)`` serializes commit, snapshot update and fanout
    for one room, so clients see room events in commit order. Different
    rooms never wait on each other.
"""
import asyncio
import json
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from roomchat.db import Database
from roomchat.errors import NotFoundError

from .schemas import LastMessage, Room

logger = logging.getLogger(__name__)


class Connection:
    """One open WebSocket bound to an authenticated user."""

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.user_id = user_id
        self.room_id: Optional[str] = None

    async def send(self, message: dict) -> bool:
        """Send a JSON frame. Returns False if the connection failed."""
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            return False

    async def emit(self, event_type: str, data: Any) -> bool:
        return await self.send({"type": event_type, "data": data})

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, user_id={self.user_id!r}, room_id={self.room_id!r})"


class RoomCoordinator:
    """Owns room rows, connection membership and fanout."""

    def __init__(self, db: Database) -> None:
        self._db = db
        # connection_id -> Connection, every registered connection
        self.connections: Dict[str, Connection] = {}
        # room_id -> connection ids currently joined
        self.members: Dict[str, Set[str]] = defaultdict(set)
        # room_id -> lock serializing that room's write path
        self._locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Room registry
    # =========================================================================

    def get_or_create(self, key: str, title: Optional[str] = None) -> Room:
        """Return the room with logical ``key``, creating it on first access."""
        room = self.find_by_key(key)
        if room is not None:
            return room
        room = Room(
            id=str(uuid.uuid4()),
            key=key,
            title=title or key,
            createdAt=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        self._db.execute(
            "INSERT INTO rooms (id, key, title, avatar, last_message, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            [room.id, room.key, room.title, room.avatar, None, room.createdAt],
        )
        logger.info(f"[Rooms] Created room {room.key!r} ({room.id})")
        return room

    def find_by_key(self, key: str) -> Optional[Room]:
        row = self._db.fetchone(
            "SELECT id, key, title, avatar, last_message, created_at FROM rooms WHERE key = ?",
            [key],
        )
        return self._row_to_room(row) if row else None

    def get(self, room_id: str) -> Room:
        row = self._db.fetchone(
            "SELECT id, key, title, avatar, last_message, created_at FROM rooms WHERE id = ?",
            [room_id],
        )
        if row is None:
            raise NotFoundError("room not found")
        return self._row_to_room(row)

    def list_rooms(self) -> List[Room]:
        rows = self._db.fetchall(
            "SELECT id, key, title, avatar, last_message, created_at FROM rooms ORDER BY created_at ASC"
        )
        return [self._row_to_room(r) for r in rows]

    def update_last_message(self, room_id: str, snapshot: Optional[LastMessage]) -> None:
        """Overwrite the snapshot. Callers hold ``write_lock(room_id)``."""
        payload = snapshot.model_dump_json() if snapshot is not None else None
        self._db.execute(
            "UPDATE rooms SET last_message = ? WHERE id = ?", [payload, room_id]
        )

    def write_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _row_to_room(row: tuple) -> Room:
        last = LastMessage(**json.loads(row[4])) if row[4] else None
        return Room(
            id=row[0], key=row[1], title=row[2], avatar=row[3],
            lastMessage=last, createdAt=row[5],
        )

    # =========================================================================
    # Membership
    # =========================================================================

    def register(self, connection: Connection) -> None:
        self.connections[connection.id] = connection

    def join(self, connection: Connection, room_id: str) -> None:
        """Join ``room_id``, leaving any previous room first."""
        self.register(connection)
        if connection.room_id and connection.room_id != room_id:
            self.leave(connection)
        connection.room_id = room_id
        self.members[room_id].add(connection.id)

    def leave(self, connection: Connection) -> Optional[str]:
        """Leave the current room. Returns the room left, if any."""
        room_id = connection.room_id
        if room_id is None:
            return None
        members = self.members.get(room_id)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.members[room_id]
        connection.room_id = None
        return room_id

    def unregister(self, connection: Connection) -> Optional[str]:
        """Forget the connection entirely. Idempotent."""
        room_id = self.leave(connection)
        self.connections.pop(connection.id, None)
        return room_id

    def room_size(self, room_id: str) -> int:
        return len(self.members.get(room_id, ()))

    def room_connections(self, room_id: str) -> List[Connection]:
        return [
            self.connections[cid]
            for cid in self.members.get(room_id, ())
            if cid in self.connections
        ]

    def connections_outside(self, room_id: str) -> List[Connection]:
        """Connections not currently viewing ``room_id``."""
        return [c for c in self.connections.values() if c.room_id != room_id]

    # =========================================================================
    # Fanout
    # =========================================================================

    async def broadcast(
        self,
        room_id: str,
        event_type: str,
        data: Any,
        exclude: Optional[Connection] = None,
    ) -> None:
        """Deliver one event to every connection joined to ``room_id``."""
        targets = [c for c in self.room_connections(room_id) if c is not exclude]
        await self._fanout(targets, {"type": event_type, "data": data})

    async def broadcast_all(self, event_type: str, data: Any) -> None:
        """Deliver one event to every registered connection, in any room or none."""
        await self._fanout(list(self.connections.values()), {"type": event_type, "data": data})

    async def send_to(self, connections: Iterable[Connection], event_type: str, data: Any) -> None:
        await self._fanout(list(connections), {"type": event_type, "data": data})

    async def _fanout(self, connections: List[Connection], message: dict) -> None:
        if not connections:
            return
        results = await asyncio.gather(
            *[conn.send(message) for conn in connections],
            return_exceptions=True,
        )
        failed = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(failed)

    def _cleanup_connections(self, failed: List[Connection]) -> None:
        """Drop dead connections from their rooms.

        Presence is left to the gateway's disconnect handling, which runs
        when the socket's receive loop ends.
        """
        for conn in failed:
            room_id = self.leave(conn)
            logger.debug(f"Removed dead connection {conn.id} from room {room_id}")
