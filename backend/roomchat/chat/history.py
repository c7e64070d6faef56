"""History service: paginated, filtered reads for non-connected callers."""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from roomchat.errors import ValidationError

from .receipts import ReadReceiptTracker
from .reply import ReplyResolver
from .rooms import RoomCoordinator
from .schemas import RoomSummary, validate_message_id
from .store import MessageStore

logger = logging.getLogger(__name__)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; align aware cursors with them."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class HistoryService:
    """Cursor pagination, search, single-message meta and room summaries."""

    def __init__(
        self,
        store: MessageStore,
        replies: ReplyResolver,
        receipts: ReadReceiptTracker,
        rooms: RoomCoordinator,
        max_page_size: int = 200,
        max_search_limit: int = 200,
    ) -> None:
        self._store = store
        self._replies = replies
        self._receipts = receipts
        self._rooms = rooms
        self.max_page_size = max_page_size
        self.max_search_limit = max_search_limit

    def list(
        self,
        room_id: str,
        limit: int,
        before: Optional[datetime] = None,
        before_id: Optional[str] = None,
    ) -> Tuple[List[dict], bool]:
        """One page of history, oldest first, plus whether older messages exist.

        Args:
            room_id: Room to read.
            limit: Page size (clamped to 1..max_page_size).
            before: ``createdAt`` of the oldest message the caller holds.
            before_id: Id of that message; breaks timestamp ties.
        """
        if before_id is not None:
            validate_message_id(before_id)
            if before is None:
                raise ValidationError("before is required with beforeId")
        self._rooms.get(room_id)
        limit = max(1, min(limit, self.max_page_size))
        before = _naive_utc(before)

        messages = self._store.page(room_id, limit, before, before_id)
        has_more = False
        if messages:
            oldest = messages[0]
            has_more = bool(self._store.page(room_id, 1, oldest.createdAt, oldest.id))
        return self._replies.enrich_many(messages), has_more

    def search(
        self,
        room_id: str,
        text: Optional[str] = None,
        sender_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        self._rooms.get(room_id)
        limit = max(1, min(limit, self.max_search_limit))
        messages = self._store.search(room_id, text=text or None, sender_id=sender_id or None, limit=limit)
        return self._replies.enrich_many(messages)

    def get(self, message_id: str) -> dict:
        """Single message meta, deleted messages included (reply-jump, owner lookups)."""
        return self._replies.enrich(self._store.get(message_id))

    def list_rooms(self, caller_id: str, default_key: str, default_title: str) -> List[RoomSummary]:
        """Every room with its lastMessage and the caller's live unread count."""
        self._rooms.get_or_create(default_key, default_title)
        return [
            RoomSummary(
                id=room.id,
                key=room.key,
                title=room.title,
                avatar=room.avatar,
                lastMessage=room.lastMessage,
                unread=self._receipts.unread_count(room.id, caller_id),
            )
            for room in self._rooms.list_rooms()
        ]
