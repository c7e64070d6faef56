"""Reply resolution: bounded previews of the message being replied to.

A preview carries the original's author, a text snippet (or the first
attachment's name when the text is blank) and at most one nested level, the
original's own reply preview, so payloads stay small however long a reply
chain grows.
"""
import logging
from typing import Dict, List, Optional

from .schemas import ATTACHMENT_PLACEHOLDER, Message, ReplyPreview
from .store import MessageStore

logger = logging.getLogger(__name__)

# Levels of preview below the message itself: the parent, and the parent's parent.
MAX_PREVIEW_DEPTH = 2


class ReplyResolver:
    """Builds ReplyPreview objects from the message store."""

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    def preview(self, message_id: Optional[str], depth: int = MAX_PREVIEW_DEPTH) -> Optional[ReplyPreview]:
        """Preview ``message_id``, or None if it does not resolve.

        Soft-deleted originals still resolve and are flagged ``deleted``.
        """
        if not message_id or depth <= 0:
            return None
        original = self._store.find(message_id)
        if original is None:
            logger.debug("[Reply] Reference %s no longer resolves", message_id)
            return None
        return self._project(original, depth)

    def _project(self, original: Message, depth: int) -> ReplyPreview:
        attachment = original.attachments[0] if original.attachments else None
        text = original.text.strip()
        if not text and attachment is not None and not original.deleted:
            text = attachment.originalName or ATTACHMENT_PLACEHOLDER

        return ReplyPreview(
            id=original.id,
            senderId=original.senderId,
            senderName=original.senderName,
            senderAvatar=original.senderAvatar,
            text=text,
            deleted=original.deleted,
            attachment=None if original.deleted else attachment,
            kind=attachment.kind if attachment is not None and not original.deleted else None,
            reply=self.preview(original.replyTo, depth - 1),
        )

    def enrich(self, message: Message) -> dict:
        """Client view of ``message`` with its reply preview attached."""
        return message.to_public(self.preview(message.replyTo))

    def enrich_many(self, messages: List[Message]) -> List[dict]:
        """Enrich a page of messages, resolving each referenced id once."""
        previews: Dict[str, Optional[ReplyPreview]] = {}
        result = []
        for message in messages:
            ref = message.replyTo
            if ref and ref not in previews:
                previews[ref] = self.preview(ref)
            result.append(message.to_public(previews.get(ref) if ref else None))
        return result
