"""Read receipts and live unread counts."""
import logging
from typing import List, Sequence

from roomchat.db import Database
from roomchat.errors import ValidationError

from .schemas import validate_message_id
from .store import MessageStore, utcnow

logger = logging.getLogger(__name__)

MAX_IDS_PER_CALL = 500


class ReadReceiptTracker:
    """Records who has seen which message.

    Unread counts are always computed from the message store on demand;
    there is no separately maintained counter to drift.
    """

    def __init__(self, db: Database, store: MessageStore) -> None:
        self._db = db
        self._store = store

    def mark_read(self, message_ids: Sequence[str], user_id: str) -> List[str]:
        """Record a receipt for each id the user has not read yet.

        Unknown ids are skipped. Re-marking is a no-op.

        Returns:
            Ids that received a new receipt, in request order.
        """
        if not isinstance(message_ids, (list, tuple)):
            raise ValidationError("ids must be a list")
        if len(message_ids) > MAX_IDS_PER_CALL:
            raise ValidationError(f"at most {MAX_IDS_PER_CALL} ids per call")
        ids = list(dict.fromkeys(validate_message_id(mid) for mid in message_ids))

        marked = []
        now = utcnow()
        for message_id in self._store.existing_ids(ids):
            if self.has_read(message_id, user_id):
                continue
            self._db.execute(
                "INSERT INTO message_reads (message_id, user_id, read_at) VALUES (?, ?, ?)",
                [message_id, user_id, now],
            )
            marked.append(message_id)
        if marked:
            logger.debug("[Receipts] %s read %d message(s)", user_id, len(marked))
        return marked

    def has_read(self, message_id: str, user_id: str) -> bool:
        row = self._db.fetchone(
            "SELECT 1 FROM message_reads WHERE message_id = ? AND user_id = ?",
            [message_id, user_id],
        )
        return row is not None

    def unread_count(self, room_id: str, user_id: str) -> int:
        return self._store.count_unread(room_id, user_id)
