"""Reaction aggregation: per-(user, emoji) toggling with grouped counts."""
import logging
from typing import List

from roomchat.db import Database
from roomchat.errors import NotFoundError, ValidationError

from .schemas import ReactionCount, validate_message_id
from .store import MessageStore, utcnow

logger = logging.getLogger(__name__)

# Long enough for ZWJ sequences and skin-tone modifiers.
MAX_EMOJI_LENGTH = 32


class ReactionAggregator:
    """Toggles reactions and reports them as emoji -> distinct user count."""

    def __init__(self, db: Database, store: MessageStore) -> None:
        self._db = db
        self._store = store

    def toggle(self, message_id: str, user_id: str, emoji: str) -> List[ReactionCount]:
        """Add the (user, emoji) pair if absent, otherwise remove it.

        Applying the same toggle twice is a net no-op.

        Raises:
            ValidationError: Malformed id or blank/overlong emoji.
            NotFoundError: Unknown or deleted message (nothing is mutated).
        """
        validate_message_id(message_id)
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationError("invalid emoji")

        message = self._store.get(message_id)
        if message.deleted:
            raise NotFoundError()

        removed = self._db.fetchone(
            """
            DELETE FROM message_reactions
            WHERE message_id = ? AND user_id = ? AND emoji = ?
            RETURNING message_id
            """,
            [message_id, user_id, emoji],
        )
        if removed is None:
            self._db.execute(
                "INSERT INTO message_reactions (message_id, user_id, emoji, reacted_at) VALUES (?, ?, ?, ?)",
                [message_id, user_id, emoji, utcnow()],
            )
        logger.debug(
            "[Reactions] %s %s %s on %s",
            user_id, "removed" if removed else "added", emoji, message_id,
        )
        return self.counts(message_id)

    def counts(self, message_id: str) -> List[ReactionCount]:
        """Grouped view ordered by each emoji's first reaction."""
        rows = self._db.fetchall(
            """
            SELECT emoji, COUNT(DISTINCT user_id) AS n, MIN(reacted_at) AS first_at
            FROM message_reactions
            WHERE message_id = ?
            GROUP BY emoji
            ORDER BY first_at ASC, emoji ASC
            """,
            [message_id],
        )
        return [ReactionCount(emoji=row[0], count=int(row[1])) for row in rows]
