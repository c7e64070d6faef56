"""Connection Gateway: WebSocket handshake, op dispatch and acks.

Protocol Flow:
    1. Client connects with ``?token=`` (or ``Authorization: Bearer``)
       → bad token: socket closed with 1008 before accept
       → Server sends: {type: "connected", userId, roomId, connectionId}
       → Server broadcasts: {type: "presence:update", data: {userId, online: true}}
    2. Client sends: {type: <op>, ackId, data: {...}}
       → Server fans out the resulting event(s) to the room
       → Server answers: {type: "ack", ackId, ok, error?, kind?, data?}
    3. On disconnect → Server broadcasts presence:update(online=false) once
       the user's last connection is gone

No failed op closes the connection. Handler work runs under
``asyncio.shield`` so a send whose socket drops mid-flight still commits
and fans out to the rest of the room.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from roomchat.auth import TokenClaims
from roomchat.errors import AuthenticationError, ChatError, ValidationError

from .moderation import ModerationAction
from .rooms import Connection
from .schemas import (
    Ack,
    ClientOp,
    DeletePayload,
    EditPayload,
    EventType,
    ModerationPayload,
    ReactPayload,
    ReadPayload,
    SendPayload,
    TypingPayload,
)
from .service import ChatService

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Any]]

_ADMIN_OPS = {
    ClientOp.ADMIN_BAN: ModerationAction.BAN,
    ClientOp.ADMIN_UNBAN: ModerationAction.UNBAN,
    ClientOp.ADMIN_MUTE: ModerationAction.MUTE,
    ClientOp.ADMIN_UNMUTE: ModerationAction.UNMUTE,
}


def bearer_from(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    """Query token wins; otherwise fall back to the Authorization header."""
    if token:
        return token
    return websocket.headers.get("authorization")


class ConnectionGateway:
    """Terminates chat WebSockets on top of a ChatService."""

    def __init__(self, service: ChatService) -> None:
        self._service = service
        self._handlers: Dict[str, Handler] = {
            ClientOp.SEND.value: self._on_send,
            ClientOp.EDIT.value: self._on_edit,
            ClientOp.DELETE.value: self._on_delete,
            ClientOp.REACT.value: self._on_react,
            ClientOp.READ.value: self._on_read,
            ClientOp.TYPING.value: self._on_typing,
        }
        for op in _ADMIN_OPS:
            self._handlers[op.value] = self._on_admin(_ADMIN_OPS[op])

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def authenticate(self, websocket: WebSocket, token: Optional[str]) -> Optional[TokenClaims]:
        """Verify the bearer token or close the socket with 1008."""
        try:
            return self._service.verifier.verify(bearer_from(websocket, token))
        except AuthenticationError as e:
            logger.warning(f"[WS] Rejected connection: {e.message}")
            await websocket.close(code=1008)  # 1008 = Policy Violation
            return None

    async def serve_room(self, websocket: WebSocket, room_key: Optional[str], token: Optional[str]) -> None:
        """Run a room connection from handshake to disconnect."""
        claims = await self.authenticate(websocket, token)
        if claims is None:
            return
        try:
            room = self._service.resolve_room(room_key)
        except ValidationError as e:
            logger.warning(f"[WS] Rejected connection: {e.message}")
            await websocket.close(code=1008)
            return

        await websocket.accept()
        conn, caller = self._service.open_connection(websocket, claims, room)
        logger.info(
            f"[WS] {caller.userId} joined room {room.key!r}. "
            f"Room now has {self._service.rooms.room_size(room.id)} connections"
        )
        try:
            await conn.send({
                "type": EventType.CONNECTED.value,
                "userId": caller.userId,
                "roomId": room.id,
                "connectionId": conn.id,
            })
            await self._service.announce_online(conn)
            await self._receive_loop(conn)
        finally:
            await self._service.close_connection(conn)
            logger.info(f"[WS] Connection {conn.id} closed")

    async def serve_listener(self, websocket: WebSocket, token: Optional[str]) -> None:
        """Run an idle connection that only receives presence, admin and reply events."""
        claims = await self.authenticate(websocket, token)
        if claims is None:
            return

        await websocket.accept()
        conn, caller = self._service.open_connection(websocket, claims)
        logger.info(f"[WS] {caller.userId} opened a notification listener")
        try:
            await conn.send({
                "type": EventType.CONNECTED.value,
                "userId": caller.userId,
                "roomId": None,
                "connectionId": conn.id,
            })
            await self._receive_loop(conn)
        finally:
            await self._service.close_connection(conn)

    async def _receive_loop(self, conn: Connection) -> None:
        while True:
            try:
                raw = await conn.websocket.receive_text()
            except WebSocketDisconnect:
                return
            except KeyError:
                # binary frame
                await conn.send(self._failure(None, ValidationError("frames must be JSON text")))
                continue
            await self.dispatch(conn, raw)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, conn: Connection, raw: str) -> None:
        """Parse one inbound frame, run its handler and ack the result."""
        try:
            frame = json.loads(raw)
        except ValueError:
            await conn.send(self._failure(None, ValidationError("frame is not valid JSON")))
            return
        if not isinstance(frame, dict):
            await conn.send(self._failure(None, ValidationError("frame must be an object")))
            return

        ack_id = frame.get("ackId")
        op = frame.get("type")
        logger.debug("[WS] %s received: type=%s", conn.id, op)
        try:
            handler = self._handlers.get(op) if isinstance(op, str) else None
            if handler is None:
                raise ValidationError(f"unknown operation: {op}")
            data = frame.get("data")
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ValidationError("data must be an object")
            result = await asyncio.shield(handler(conn, data))
        except ChatError as e:
            await conn.send(self._failure(ack_id, e))
            return
        except PayloadError as e:
            logger.debug(f"[WS] Invalid payload for {op}: {e}")
            await conn.send(self._failure(ack_id, ValidationError("invalid payload")))
            return
        except Exception:
            logger.exception(f"[WS] Handler for {op} failed")
            ack = Ack(ackId=ack_id, ok=False, error="internal server error", kind="internal")
            await conn.send(ack.model_dump(mode="json"))
            return

        await conn.send(Ack(ackId=ack_id, ok=True, data=result).model_dump(mode="json", exclude={"error", "kind"}))

    @staticmethod
    def _failure(ack_id: Any, error: ChatError) -> dict:
        ack = Ack(ackId=ack_id, ok=False, error=error.message, kind=error.kind)
        return ack.model_dump(mode="json")

    # =========================================================================
    # Op handlers
    # =========================================================================

    async def _on_send(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.send(conn.user_id, conn.room_id, SendPayload.model_validate(data))

    async def _on_edit(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.edit(conn.user_id, EditPayload.model_validate(data))

    async def _on_delete(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.delete(conn.user_id, DeletePayload.model_validate(data))

    async def _on_react(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.react(conn.user_id, ReactPayload.model_validate(data))

    async def _on_read(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.read(conn.user_id, ReadPayload.model_validate(data))

    async def _on_typing(self, conn: Connection, data: Dict[str, Any]) -> dict:
        return await self._service.typing(conn, TypingPayload.model_validate(data))

    def _on_admin(self, action: ModerationAction) -> Handler:
        async def handler(conn: Connection, data: Dict[str, Any]) -> dict:
            payload = ModerationPayload.model_validate(data)
            return await self._service.moderate(conn.user_id, action, payload.targetId)
        return handler
