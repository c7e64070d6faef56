"""ChatService - wiring and write path of the realtime chat core.

Every room mutation follows the same path:

    Moderation Gate -> Message Store (commit) -> lastMessage snapshot
        -> Reply Resolver (enrich) -> room fanout -> Notification Router

and runs under the room's write lock, so the fanout order of a room always
matches its commit order. Connections are only delivery targets: an
operation whose connection drops mid-flight still commits and fans out.

Usage:
    service = ChatService.get_instance()
    data = await service.send(user_id, room_id, SendPayload(text="hi"))
"""
import logging
from typing import Dict, List, Optional, Tuple

from fastapi import WebSocket

from roomchat.auth import CallerIdentity, TokenClaims, TokenVerifier, UserDirectory
from roomchat.config import AppConfig, get_config
from roomchat.db import Database
from roomchat.errors import NotFoundError, ValidationError

from .history import HistoryService
from .moderation import ModerationAction, ModerationGate
from .notifications import NotificationRouter
from .presence import PresenceRegistry
from .reactions import ReactionAggregator
from .receipts import ReadReceiptTracker
from .reply import ReplyResolver
from .rooms import Connection, RoomCoordinator
from .schemas import (
    DeletePayload,
    EditPayload,
    EventType,
    LastMessage,
    ReactPayload,
    ReadPayload,
    Room,
    SendPayload,
    TypingPayload,
    validate_message_id,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

MAX_MENTIONS = 50


class ChatService:
    """Singleton holding every chat component for the process.

    Attributes:
        _instance: Singleton instance of the service.
    """

    _instance: Optional["ChatService"] = None

    def __init__(self, config: AppConfig, db: Database) -> None:
        self.config = config
        self.db = db
        jwt_cfg = config.secrets.jwt
        self.verifier = TokenVerifier(jwt_cfg.secret_key, jwt_cfg.algorithm)
        self.directory = UserDirectory(db)
        self.store = MessageStore(db, config.chat.max_text_length)
        self.replies = ReplyResolver(self.store)
        self.reactions = ReactionAggregator(db, self.store)
        self.receipts = ReadReceiptTracker(db, self.store)
        self.moderation = ModerationGate(self.directory)
        self.presence = PresenceRegistry()
        self.rooms = RoomCoordinator(db)
        self.history = HistoryService(
            self.store,
            self.replies,
            self.receipts,
            self.rooms,
            max_page_size=config.chat.max_page_size,
            max_search_limit=config.chat.max_search_limit,
        )
        self.notifications = NotificationRouter(
            self.store.owner_of, config.notifications.reply_cache_size
        )

    @classmethod
    def get_instance(
        cls, config: Optional[AppConfig] = None, db_path: Optional[str] = None
    ) -> "ChatService":
        """Get or create the singleton instance.

        Args:
            config: Optional config (only used on first call).
            db_path: Optional database path overriding ``config.database.path``.
        """
        if cls._instance is None:
            config = config or get_config()
            db = Database.get_instance(db_path or config.database.path)
            cls._instance = cls(config, db)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton and close the database (used by tests)."""
        cls._instance = None
        Database.reset_instance()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def default_room(self) -> Room:
        chat = self.config.chat
        return self.rooms.get_or_create(chat.default_room_key, chat.default_room_title)

    def resolve_room(self, key: Optional[str]) -> Room:
        key = (key or "").strip()
        if not key or key == self.config.chat.default_room_key:
            return self.default_room()
        if len(key) > 64:
            raise ValidationError("room key too long")
        return self.rooms.get_or_create(key)

    def open_connection(
        self, websocket: WebSocket, claims: TokenClaims, room: Optional[Room] = None
    ) -> Tuple[Connection, CallerIdentity]:
        """Register an authenticated socket, join ``room`` and mark presence.

        With ``room=None`` the connection stays idle (notification listener).
        """
        caller = self.directory.ensure(claims)
        conn = Connection(websocket, caller.userId)
        if room is not None:
            self.rooms.join(conn, room.id)
        else:
            self.rooms.register(conn)
        self.presence.add(caller.userId, conn.id, room.id if room is not None else None)
        return conn, caller

    async def announce_online(self, conn: Connection) -> None:
        if conn.room_id is not None:
            await self.rooms.broadcast(conn.room_id, EventType.PRESENCE_UPDATE.value, {
                "userId": conn.user_id,
                "online": True,
            })

    async def close_connection(self, conn: Connection) -> None:
        """Forget a connection. Safe to run twice or out of order.

        When it was the user's last connection, every room the user joined
        while online is told the user went offline, whichever room (or idle
        listener) closed last.
        """
        self.rooms.unregister(conn)
        rooms = self.presence.rooms_of(conn.user_id)
        if not self.presence.remove(conn.user_id, conn.id):
            return
        self.directory.touch_last_seen(conn.user_id)
        logger.info(f"[Chat] User {conn.user_id} went offline")
        for room_id in sorted(rooms):
            await self.rooms.broadcast(room_id, EventType.PRESENCE_UPDATE.value, {
                "userId": conn.user_id,
                "online": False,
            })

    # =========================================================================
    # Message operations
    # =========================================================================

    async def send(self, user_id: str, room_id: Optional[str], payload: SendPayload) -> dict:
        """Persist a new message and fan it out to the room."""
        caller = self.moderation.ensure_can_write(user_id)
        if room_id is None:
            raise ValidationError("not in a room")
        if not payload.text.strip() and not payload.attachments:
            raise ValidationError("message is empty")
        if len(payload.attachments) > self.config.chat.max_attachments:
            raise ValidationError("too many attachments")
        if len(payload.mentions) > MAX_MENTIONS:
            raise ValidationError("too many mentions")
        if payload.replyTo is not None:
            validate_message_id(payload.replyTo)

        async with self.rooms.write_lock(room_id):
            original = self.store.find(payload.replyTo) if payload.replyTo else None
            if original is not None and original.roomId != room_id:
                original = None

            message = self.store.append(
                user_id,
                room_id,
                payload.text,
                payload.attachments,
                original.id if original else None,
                sender_name=caller.displayName,
                sender_avatar=caller.avatar,
                reply_to_owner_id=original.senderId if original else None,
                mentions=payload.mentions,
            )
            self.rooms.update_last_message(room_id, LastMessage.of(message))
            self.notifications.remember(message)

            await self.rooms.broadcast(
                room_id, EventType.MESSAGE_NEW.value, self.replies.enrich(message)
            )
            await self.notifications.route(message, self.rooms)

        logger.info(f"[Chat] {user_id} sent {message.id} to room {room_id}")
        return {"id": message.id, "createdAt": message.createdAt.isoformat(), "delivered": True}

    async def edit(self, user_id: str, payload: EditPayload) -> dict:
        self.moderation.ensure_can_write(user_id)
        current = self.store.get(payload.id)

        async with self.rooms.write_lock(current.roomId):
            updated = self.store.edit(payload.id, user_id, payload.text)
            room = self.rooms.get(updated.roomId)
            if room.lastMessage is not None and room.lastMessage.id == updated.id:
                self.rooms.update_last_message(room.id, LastMessage.of(updated))

            data = {
                "id": updated.id,
                "text": updated.text,
                "editedAt": updated.editedAt.isoformat(),
            }
            await self.rooms.broadcast(updated.roomId, EventType.MESSAGE_EDITED.value, data)
        return data

    async def delete(self, user_id: str, payload: DeletePayload) -> dict:
        current = self.store.get(payload.id)
        is_moderator = self.moderation.is_moderator(user_id)

        async with self.rooms.write_lock(current.roomId):
            was_deleted = self.store.get(payload.id).deleted
            self.store.soft_delete(payload.id, user_id, is_moderator=is_moderator)
            if was_deleted:
                return {"id": payload.id}

            room = self.rooms.get(current.roomId)
            if room.lastMessage is not None and room.lastMessage.id == payload.id:
                latest = self.store.latest(room.id)
                self.rooms.update_last_message(room.id, LastMessage.of(latest) if latest else None)

            await self.rooms.broadcast(
                current.roomId, EventType.MESSAGE_DELETED.value, {"id": payload.id}
            )
        logger.info(f"[Chat] {user_id} deleted {payload.id} (moderator={is_moderator})")
        return {"id": payload.id}

    async def react(self, user_id: str, payload: ReactPayload) -> dict:
        current = self.store.get(validate_message_id(payload.id))
        if current.deleted:
            raise NotFoundError()

        async with self.rooms.write_lock(current.roomId):
            counts = self.reactions.toggle(payload.id, user_id, payload.emoji)
            data = {"id": payload.id, "reactions": [c.model_dump() for c in counts]}
            await self.rooms.broadcast(current.roomId, EventType.MESSAGE_REACTIONS.value, data)
        return data

    async def read(self, user_id: str, payload: ReadPayload) -> dict:
        """Mark messages read; broadcast only ids that got a new receipt."""
        marked = self.receipts.mark_read(payload.ids, user_id)
        by_room: Dict[str, List[str]] = {}
        for message_id in marked:
            message = self.store.get(message_id)
            by_room.setdefault(message.roomId, []).append(message_id)

        for room_id, ids in by_room.items():
            async with self.rooms.write_lock(room_id):
                await self.rooms.broadcast(room_id, EventType.MESSAGE_READ.value, {
                    "ids": ids,
                    "userId": user_id,
                })
        return {"marked": marked}

    async def typing(self, conn: Connection, payload: TypingPayload) -> dict:
        if conn.room_id is None:
            raise ValidationError("not in a room")
        await self.rooms.broadcast(
            conn.room_id,
            EventType.TYPING.value,
            {"userId": conn.user_id, "isTyping": bool(payload.isTyping)},
            exclude=conn,
        )
        return {"isTyping": bool(payload.isTyping)}

    async def moderate(self, actor_id: str, action: ModerationAction, target_id: str) -> dict:
        """Apply an elevated action and tell every connection, in every room."""
        event, data = self.moderation.apply(actor_id, action, target_id)
        await self.rooms.broadcast_all(event.value, data)
        return data
