"""MessageStore - DuckDB-backed message log with mutable overlay fields.

The log is append-mostly: ``text``/``editedAt`` change on edit, ``deleted``
flips on soft delete, and reactions/reads live in their own membership
tables. Rows are never removed, so deleted messages still resolve by id for
reply previews and notification lookups.

All writes are synchronous (DuckDB is embedded); callers that need ordering
across a room hold the room's write lock around them.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from roomchat.db import Database
from roomchat.errors import AuthorizationError, NotFoundError, ValidationError

from .schemas import Attachment, Message, Reaction, ReadReceipt, validate_message_id

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, room_id, sender_id, sender_name, sender_avatar, text, attachments, "
    "reply_to, reply_to_owner_id, mentions, created_at, edited_at, deleted"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class MessageStore:
    """Persistent message log for every room."""

    def __init__(self, db: Database, max_text_length: int = 5000) -> None:
        self._db = db
        self.max_text_length = max_text_length
        self._last_created: Optional[datetime] = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def append(
        self,
        sender_id: str,
        room_id: str,
        text: str,
        attachments: Optional[List[Attachment]] = None,
        reply_to: Optional[str] = None,
        *,
        sender_name: str = "user",
        sender_avatar: Optional[str] = None,
        reply_to_owner_id: Optional[str] = None,
        mentions: Optional[List[str]] = None,
    ) -> Message:
        """Persist a new message. Over-long text is truncated, never rejected."""
        message = Message(
            roomId=room_id,
            senderId=sender_id,
            senderName=sender_name,
            senderAvatar=sender_avatar,
            text=self.truncate(text),
            attachments=list(attachments or []),
            replyTo=reply_to,
            replyToOwnerId=reply_to_owner_id,
            mentions=list(dict.fromkeys(mentions or [])),
            createdAt=self._next_timestamp(),
        )
        self._db.execute(
            f"INSERT INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                message.id, message.roomId, message.senderId, message.senderName,
                message.senderAvatar, message.text,
                json.dumps([a.model_dump() for a in message.attachments]),
                message.replyTo, message.replyToOwnerId, json.dumps(message.mentions),
                message.createdAt, None, False,
            ],
        )
        logger.debug("[Store] Appended %s to room %s", message.id, room_id)
        return message

    def edit(self, message_id: str, caller_id: str, text: str) -> Message:
        """Replace the text of the caller's own message.

        Raises:
            NotFoundError: Unknown or already deleted message.
            AuthorizationError: Caller is not the sender.
            ValidationError: Blank text on a message without attachments.
        """
        message = self.get(message_id)
        if message.deleted:
            raise NotFoundError()
        if message.senderId != caller_id:
            raise AuthorizationError("not your message")
        if not text.strip() and not message.attachments:
            raise ValidationError("text is required")

        edited_at = utcnow()
        new_text = self.truncate(text)
        self._db.execute(
            "UPDATE messages SET text = ?, edited_at = ? WHERE id = ?",
            [new_text, edited_at, message_id],
        )
        return message.model_copy(update={"text": new_text, "editedAt": edited_at})

    def soft_delete(self, message_id: str, caller_id: str, *, is_moderator: bool = False) -> Message:
        """Blank the text and flag the row deleted; the row itself stays.

        Allowed for the sender or a moderator+. Deleting twice is a no-op.
        """
        message = self.get(message_id)
        if message.senderId != caller_id and not is_moderator:
            raise AuthorizationError("not your message")
        if message.deleted:
            return message

        self._db.execute(
            "UPDATE messages SET deleted = TRUE, text = '' WHERE id = ?",
            [message_id],
        )
        return message.model_copy(update={"deleted": True, "text": ""})

    def truncate(self, text: Optional[str]) -> str:
        return (text or "")[: self.max_text_length]

    def _next_timestamp(self) -> datetime:
        """Strictly increasing creation time, so commit order survives sorting."""
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, message_id: str) -> Message:
        """Resolve a message by id regardless of deletion state."""
        validate_message_id(message_id)
        row = self._db.fetchone(
            f"SELECT {_COLUMNS} FROM messages WHERE id = ?", [message_id]
        )
        if row is None:
            raise NotFoundError()
        return self._hydrate([row])[0]

    def find(self, message_id: str) -> Optional[Message]:
        try:
            return self.get(message_id)
        except NotFoundError:
            return None

    def owner_of(self, message_id: str) -> Optional[str]:
        row = self._db.fetchone(
            "SELECT sender_id FROM messages WHERE id = ?", [message_id]
        )
        return row[0] if row else None

    def existing_ids(self, message_ids: Sequence[str]) -> List[str]:
        if not message_ids:
            return []
        rows = self._db.fetchall(
            f"SELECT id FROM messages WHERE id IN ({_placeholders(message_ids)})",
            list(message_ids),
        )
        found = {r[0] for r in rows}
        return [mid for mid in message_ids if mid in found]

    def page(
        self,
        room_id: str,
        limit: int,
        before: Optional[datetime] = None,
        before_id: Optional[str] = None,
    ) -> List[Message]:
        """Newest ``limit`` non-deleted messages strictly older than the cursor.

        The cursor is ``(createdAt, id)``; ties on ``createdAt`` are broken by
        id so that consecutive pages neither overlap nor skip. Without
        ``before_id`` the cursor compares on time alone. Returned oldest first.
        """
        sql = f"SELECT {_COLUMNS} FROM messages WHERE room_id = ? AND NOT deleted"
        params: list = [room_id]
        if before is not None and before_id is not None:
            sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
            params += [before, before, before_id]
        elif before is not None:
            sql += " AND created_at < ?"
            params.append(before)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        rows = self._db.fetchall(sql, params)
        rows.reverse()
        return self._hydrate(rows)

    def search(
        self,
        room_id: str,
        text: Optional[str] = None,
        sender_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Message]:
        """Case-insensitive substring and/or exact sender filter, oldest first."""
        sql = f"SELECT {_COLUMNS} FROM messages WHERE room_id = ? AND NOT deleted"
        params: list = [room_id]
        if text:
            sql += " AND strpos(lower(text), lower(?)) > 0"
            params.append(text)
        if sender_id:
            sql += " AND sender_id = ?"
            params.append(sender_id)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        return self._hydrate(self._db.fetchall(sql, params))

    def latest(self, room_id: str) -> Optional[Message]:
        """Newest non-deleted message of a room."""
        messages = self.page(room_id, 1)
        return messages[0] if messages else None

    def count_unread(self, room_id: str, user_id: str) -> int:
        """Live count: not deleted, not own, no receipt from ``user_id``."""
        row = self._db.fetchone(
            """
            SELECT COUNT(*) FROM messages m
            WHERE m.room_id = ?
              AND NOT m.deleted
              AND m.sender_id <> ?
              AND NOT EXISTS (
                  SELECT 1 FROM message_reads r
                  WHERE r.message_id = m.id AND r.user_id = ?
              )
            """,
            [room_id, user_id, user_id],
        )
        return int(row[0]) if row else 0

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _hydrate(self, rows: List[tuple]) -> List[Message]:
        """Turn message rows into models, loading reactions/reads in batch."""
        if not rows:
            return []
        ids = [r[0] for r in rows]
        reactions: Dict[str, List[Reaction]] = {}
        for message_id, user_id, emoji in self._db.fetchall(
            f"""
            SELECT message_id, user_id, emoji FROM message_reactions
            WHERE message_id IN ({_placeholders(ids)})
            ORDER BY reacted_at ASC
            """,
            ids,
        ):
            reactions.setdefault(message_id, []).append(Reaction(userId=user_id, emoji=emoji))

        reads: Dict[str, List[ReadReceipt]] = {}
        for message_id, user_id, read_at in self._db.fetchall(
            f"""
            SELECT message_id, user_id, read_at FROM message_reads
            WHERE message_id IN ({_placeholders(ids)})
            ORDER BY read_at ASC
            """,
            ids,
        ):
            reads.setdefault(message_id, []).append(ReadReceipt(userId=user_id, at=read_at))

        return [
            Message(
                id=row[0],
                roomId=row[1],
                senderId=row[2],
                senderName=row[3],
                senderAvatar=row[4],
                text=row[5],
                attachments=[Attachment(**a) for a in json.loads(row[6] or "[]")],
                replyTo=row[7],
                replyToOwnerId=row[8],
                mentions=json.loads(row[9] or "[]"),
                reactions=reactions.get(row[0], []),
                reads=reads.get(row[0], []),
                createdAt=row[10],
                editedAt=row[11],
                deleted=bool(row[12]),
            )
            for row in rows
        ]
