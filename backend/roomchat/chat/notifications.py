"""Reply-to-me notification routing for users not viewing a room.

Connections joined to a room already receive ``message:new``. Everyone else
(connections in other rooms, or idle notification listeners) gets a
``notification:reply`` event when a new message replies to one of their own
messages or mentions them.

Owner lookups for ``replyTo`` ids go through a BoundedCache so a burst of
replies to the same message costs one store read.
"""
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

from .rooms import Connection, RoomCoordinator
from .schemas import EventType, Message

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 200

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class BoundedCache(Generic[K, V]):
    """Fixed-capacity map evicting the oldest-inserted entry when full.

    Setting an existing key re-stamps it as newest. Reads do not change
    eviction order.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE, clock: Callable[[], float] = time.monotonic) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[K, Tuple[V, float]]" = OrderedDict()

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        return entry[0] if entry is not None else None

    def set(self, key: K, value: V) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (value, self._clock())
        while len(self._entries) > self.capacity:
            self.evict()

    def evict(self) -> Optional[K]:
        """Remove and return the oldest-inserted key, if any."""
        if not self._entries:
            return None
        key, _ = self._entries.popitem(last=False)
        return key

    def inserted_at(self, key: K) -> Optional[float]:
        entry = self._entries.get(key)
        return entry[1] if entry is not None else None

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class NotificationRouter:
    """Classifies messages as reply-to-me and notifies idle connections."""

    def __init__(
        self,
        lookup_owner: Callable[[str], Optional[str]],
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._lookup_owner = lookup_owner
        self.cache: BoundedCache[str, str] = BoundedCache(cache_size)

    def remember(self, message: Message) -> None:
        """Cache id -> sender for a freshly committed message."""
        self.cache.set(message.id, message.senderId)

    def owner_of(self, message_id: str) -> Optional[str]:
        owner = self.cache.get(message_id)
        if owner is not None:
            return owner
        owner = self._lookup_owner(message_id)
        if owner is not None:
            self.cache.set(message_id, owner)
        return owner

    def is_reply_to_me(self, message: Message, user_id: str) -> bool:
        """True if ``message`` replies to (or mentions) ``user_id``.

        Checked in order: the message's own ``replyToOwnerId``, the owner of
        ``replyTo`` (cache, then store), then ``mentions``. A user's own
        messages never count.
        """
        if message.senderId == user_id:
            return False
        if message.replyToOwnerId:
            return message.replyToOwnerId == user_id
        if message.replyTo:
            owner = self.owner_of(message.replyTo)
            if owner is not None:
                return owner == user_id
        return user_id in message.mentions

    async def route(self, message: Message, rooms: RoomCoordinator) -> List[str]:
        """Notify connections outside the message's room. Returns notified user ids."""
        verdicts: Dict[str, bool] = {}
        targets: List[Connection] = []
        for conn in rooms.connections_outside(message.roomId):
            if conn.user_id not in verdicts:
                verdicts[conn.user_id] = self.is_reply_to_me(message, conn.user_id)
            if verdicts[conn.user_id]:
                targets.append(conn)

        if targets:
            await rooms.send_to(targets, EventType.NOTIFICATION_REPLY.value, {
                "messageId": message.id,
                "roomId": message.roomId,
                "senderId": message.senderId,
                "senderName": message.senderName,
                "text": message.text[:140],
            })
            logger.debug("[Notify] reply %s routed to %d connection(s)", message.id, len(targets))
        return sorted(user for user, hit in verdicts.items() if hit)
