"""Pydantic schemas for the realtime chat core.

This module defines:
    - Storage shapes (Message, Room, Attachment, Reaction, ReadReceipt)
    - Client-facing projections (ReplyPreview, ReactionCount, RoomSummary)
    - Inbound WebSocket payloads, one per client operation
    - Event and operation names of the WebSocket protocol

Message ids are 24 lowercase hex characters: 12 hex digits of epoch
milliseconds followed by 12 random hex digits, so ids sort by creation time.
"""
import re
import secrets
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from roomchat.errors import ValidationError

MESSAGE_ID_PATTERN = re.compile(r"^[0-9a-f]{24}$")

ATTACHMENT_PLACEHOLDER = "(attachment)"


def new_message_id() -> str:
    return f"{int(time.time() * 1000):012x}{secrets.token_hex(6)}"


def validate_message_id(value: Any) -> str:
    """Return ``value`` as a message id or raise ValidationError."""
    if not isinstance(value, str) or not MESSAGE_ID_PATTERN.match(value):
        raise ValidationError("malformed message id")
    return value


# =============================================================================
# Protocol names
# =============================================================================


class ClientOp(str, Enum):
    """Operations a connected client may invoke."""
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"
    REACT = "react"
    READ = "read"
    TYPING = "typing"
    ADMIN_BAN = "admin:ban"
    ADMIN_UNBAN = "admin:unban"
    ADMIN_MUTE = "admin:mute"
    ADMIN_UNMUTE = "admin:unmute"


class EventType(str, Enum):
    """Events pushed from the server to connected clients."""
    CONNECTED = "connected"
    ACK = "ack"
    MESSAGE_NEW = "message:new"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGE_REACTIONS = "message:reactions"
    MESSAGE_READ = "message:read"
    PRESENCE_UPDATE = "presence:update"
    TYPING = "typing"
    USER_BANNED = "admin:userBanned"
    USER_UNBANNED = "admin:userUnbanned"
    USER_MUTED = "admin:userMuted"
    USER_UNMUTED = "admin:userUnmuted"
    NOTIFICATION_REPLY = "notification:reply"


# =============================================================================
# Storage shapes
# =============================================================================


class Attachment(BaseModel):
    """Opaque file descriptor produced by the upload service.

    Field spellings used by older clients (``mimetype``, ``originalname``...)
    are accepted once here and never seen downstream.
    """
    url: str = Field(..., min_length=1, description="Where the file is served from")
    mime: str = Field(
        default="application/octet-stream",
        validation_alias=AliasChoices("mime", "mimetype", "mimeType"),
    )
    size: int = Field(default=0, ge=0, validation_alias=AliasChoices("size", "sizeBytes"))
    originalName: str = Field(
        default="",
        validation_alias=AliasChoices("originalName", "originalname", "originalFilename"),
    )

    @property
    def kind(self) -> str:
        """Coarse media kind used for reply preview icons."""
        major = self.mime.lower().split("/", 1)[0]
        return major if major in ("image", "video", "audio") else "file"


class Reaction(BaseModel):
    userId: str
    emoji: str


class ReadReceipt(BaseModel):
    userId: str
    at: datetime


class ReactionCount(BaseModel):
    emoji: str
    count: int


def group_reactions(reactions: List[Reaction]) -> List[ReactionCount]:
    """Collapse (user, emoji) pairs into per-emoji distinct-user counts.

    Emojis keep the order in which they first appear.
    """
    users_by_emoji: Dict[str, set] = {}
    for reaction in reactions:
        users_by_emoji.setdefault(reaction.emoji, set()).add(reaction.userId)
    return [
        ReactionCount(emoji=emoji, count=len(users))
        for emoji, users in users_by_emoji.items()
    ]


class ReplyPreview(BaseModel):
    """Bounded preview of the message being replied to.

    Attributes:
        id: Id of the original message.
        senderId: Author of the original message.
        senderName: Author's display name at the time they wrote it.
        text: Original text, the attachment name, or a placeholder.
        deleted: True if the original has been deleted since.
        attachment: First attachment of the original, if any.
        kind: image/video/audio/file for the first attachment.
        reply: The original's own preview (one level only).
    """
    id: str
    senderId: str
    senderName: str
    senderAvatar: Optional[str] = None
    text: str = ""
    deleted: bool = False
    attachment: Optional[Attachment] = None
    kind: Optional[str] = None
    reply: Optional["ReplyPreview"] = None


class Message(BaseModel):
    """A stored chat message.

    ``id``, ``roomId``, ``senderId`` and ``createdAt`` never change after the
    message is appended.
    """
    id: str = Field(default_factory=new_message_id)
    roomId: str
    senderId: str
    senderName: str = "user"
    senderAvatar: Optional[str] = None
    text: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    replyTo: Optional[str] = None
    replyToOwnerId: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    reads: List[ReadReceipt] = Field(default_factory=list)
    createdAt: datetime
    editedAt: Optional[datetime] = None
    deleted: bool = False

    def to_public(self, reply: Optional[ReplyPreview] = None) -> dict:
        """Client view: reactions grouped, reply preview attached."""
        data = self.model_dump(mode="json", exclude={"reactions"})
        data["reactions"] = [
            count.model_dump() for count in group_reactions(self.reactions)
        ]
        data["reply"] = reply.model_dump(mode="json") if reply else None
        return data


class LastMessage(BaseModel):
    """Denormalized snapshot of a room's newest non-deleted message."""
    id: str
    text: str
    senderId: str
    senderName: str
    createdAt: datetime

    @classmethod
    def of(cls, message: Message) -> "LastMessage":
        return cls(
            id=message.id,
            text=message.text or (ATTACHMENT_PLACEHOLDER if message.attachments else ""),
            senderId=message.senderId,
            senderName=message.senderName,
            createdAt=message.createdAt,
        )


class Room(BaseModel):
    id: str
    key: str
    title: str
    avatar: Optional[str] = None
    createdAt: datetime
    lastMessage: Optional[LastMessage] = None


class RoomSummary(BaseModel):
    """Room list entry for one caller."""
    id: str
    key: str
    title: str
    avatar: Optional[str] = None
    lastMessage: Optional[LastMessage] = None
    unread: int = 0


# =============================================================================
# Inbound payloads
# =============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SendPayload(_Payload):
    text: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    replyTo: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)


class EditPayload(_Payload):
    id: str
    text: str


class DeletePayload(_Payload):
    id: str


class ReactPayload(_Payload):
    id: str
    emoji: str


class ReadPayload(_Payload):
    ids: List[str] = Field(default_factory=list)


class TypingPayload(_Payload):
    isTyping: bool = True


class ModerationPayload(_Payload):
    targetId: str = Field(..., min_length=1)


class Ack(BaseModel):
    """Per-operation outcome returned to the caller only."""
    type: str = EventType.ACK.value
    ackId: Any = None
    ok: bool
    error: Optional[str] = None
    kind: Optional[str] = None
    data: Any = None
