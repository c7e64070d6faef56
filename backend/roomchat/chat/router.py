"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time room messaging (see gateway.py)
    - WebSocket /ws/notifications: Idle listener for reply notifications
    - GET /chat/rooms: Room list with lastMessage and unread counts
    - GET /chat/messages: Cursor-paginated room history
    - GET /chat/messages/{message_id}: Single message meta
    - GET /chat/search: Text / sender search within a room
    - POST /chat/admin/{action}/{target_id}: Ban, unban, mute, unmute

Every HTTP endpoint needs a bearer token.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket
from fastapi.responses import JSONResponse

from roomchat.auth import CallerIdentity
from roomchat.auth.dependencies import get_caller

from .gateway import ConnectionGateway
from .moderation import ModerationAction
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    room: Optional[str] = Query(None, description="Logical room key (default room when omitted)"),
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    """WebSocket endpoint for real-time chat in a room."""
    logger.info(f"[WS] New connection to room: {room}")
    await ConnectionGateway(ChatService.get_instance()).serve_room(websocket, room, token)


@router.websocket("/ws/notifications")
async def websocket_notifications_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer token"),
) -> None:
    await ConnectionGateway(ChatService.get_instance()).serve_listener(websocket, token)


@router.get("/chat/rooms")
async def list_rooms(caller: CallerIdentity = Depends(get_caller)) -> JSONResponse:
    """List every room with its lastMessage snapshot and the caller's unread count."""
    service = ChatService.get_instance()
    chat = service.config.chat
    rooms = service.history.list_rooms(caller.userId, chat.default_room_key, chat.default_room_title)
    return JSONResponse({"rooms": [r.model_dump(mode="json") for r in rooms]})


@router.get("/chat/messages")
async def get_message_history(
    roomId: str = Query(..., description="Room id"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    before: Optional[datetime] = Query(None, description="createdAt of the oldest message held"),
    beforeId: Optional[str] = Query(None, description="Id of the oldest message held"),
    caller: CallerIdentity = Depends(get_caller),
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the ``createdAt`` and ``id`` of
    the oldest message they currently have.

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /chat/messages?roomId=abc&limit=30
        GET /chat/messages?roomId=abc&before=2024-05-01T10:00:00Z&beforeId=018f...
    """
    service = ChatService.get_instance()
    messages, has_more = service.history.list(
        roomId, limit or service.config.chat.default_page_size, before, beforeId
    )
    return JSONResponse({"messages": messages, "hasMore": has_more})


@router.get("/chat/messages/{message_id}")
async def get_message(message_id: str, caller: CallerIdentity = Depends(get_caller)) -> JSONResponse:
    return JSONResponse(ChatService.get_instance().history.get(message_id))


@router.get("/chat/search")
async def search_messages(
    roomId: str = Query(..., description="Room id"),
    q: Optional[str] = Query(None, description="Case-insensitive text to look for"),
    senderId: Optional[str] = Query(None, description="Only messages from this sender"),
    limit: Optional[int] = Query(None, ge=1, description="Maximum results"),
    caller: CallerIdentity = Depends(get_caller),
) -> JSONResponse:
    service = ChatService.get_instance()
    messages = service.history.search(
        roomId, q, senderId, limit or service.config.chat.default_search_limit
    )
    return JSONResponse({"messages": messages})


@router.post("/chat/admin/{action}/{target_id}")
async def moderate_user(
    action: ModerationAction,
    target_id: str,
    caller: CallerIdentity = Depends(get_caller),
) -> JSONResponse:
    """Apply a moderation action and broadcast it to every connection."""
    data = await ChatService.get_instance().moderate(caller.userId, action, target_id)
    return JSONResponse({"ok": True, **data})
