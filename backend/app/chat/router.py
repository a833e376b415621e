"""Chat router providing the WebSocket channel and the chat REST surface.

This module provides:
    - WebSocket /ws: real-time channel (authenticate, rooms, messages, typing)
    - POST   /chats: Create a direct or group chat
    - GET    /chats: The caller's visible chats, newest first
    - GET    /chats/unread: Unread totals
    - GET    /chats/{id}: One chat
    - DELETE /chats/{id}: Soft-delete for the caller
    - POST   /chats/{id}/restore: Undo a soft-delete
    - POST   /chats/{id}/leave: Leave a group chat
    - POST   /chats/{id}/read: Explicit read acknowledgment
    - GET    /chats/{id}/messages: Paginated history
    - POST   /chats/{id}/messages: Persist (and count) a message
    - PATCH  /chats/{id}/messages/{mid}: Edit
    - DELETE /chats/{id}/messages/{mid}: Soft-delete a message
    - POST   /chats/{id}/messages/{mid}/reactions: Toggle a reaction
    - POST   /chats/{id}/messages/{mid}/pin: Toggle pin

REST handlers let ChatError propagate to the application's exception
handler. Mutations that other participants must see are published to the
chat room (or the participants' personal rooms for new chats).
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from app.auth.dependencies import get_current_user, runtime_dependency
from app.store.schemas import Chat, ChatCreate, MessageCreate, User

from .manager import chat_room, user_room
from .protocol import ServerEvent
from .runtime import ChatRuntime, get_runtime
from .session import ConnectionSession

logger = logging.getLogger(__name__)

router = APIRouter()


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, max_length=16)


class EditMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)


def _chat_view(chat: Chat, user_id: str) -> dict:
    """Serialize a chat for one viewer, with their own unread count."""
    data = chat.model_dump(mode="json")
    data["unreadCount"] = chat.unread_for(user_id)
    return data


# =============================================================================
# WebSocket channel
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Real-time channel for one client.

    Protocol Flow:
        1. Client connects; the backend assigns a socket id
        2. Client sends {event: "authenticate", data: token}
           -> presence online, user_status_change broadcast
        3. Client sends join_chat / send_message / typing_* events
        4. On disconnect -> offline once the user's last socket is gone

    Frames that are not valid JSON are logged and skipped; the connection
    stays open.
    """
    runtime = get_runtime()
    socket_id = await runtime.manager.connect(websocket)
    session = ConnectionSession(runtime, socket_id)
    logger.info("[WS] Connection accepted, socket %s", socket_id)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("[WS] Invalid JSON on socket %s", socket_id)
                continue
            await session.handle(raw)
    except WebSocketDisconnect:
        logger.info("[WS] Socket %s disconnected", socket_id)
    finally:
        await session.close()


# =============================================================================
# Chats
# =============================================================================


@router.post("/chats", status_code=201)
async def create_chat(
    body: ChatCreate,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    chat, created = await run_in_threadpool(runtime.chats.create_chat, user.id, body)
    if created:
        payload = {"chat": chat.model_dump(mode="json")}
        for participant_id in chat.participants:
            await runtime.manager.publish(
                user_room(participant_id), ServerEvent.CHAT_CREATED.value, payload
            )
        logger.info("Chat %s (%s) created by %s", chat.id, chat.type.value, user.id)
    return {"chat": _chat_view(chat, user.id), "created": created}


@router.get("/chats")
async def list_chats(
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    chats = await run_in_threadpool(runtime.chats.list_chats, user.id)
    return {"chats": [_chat_view(chat, user.id) for chat in chats]}


@router.get("/chats/unread")
async def unread_summary(
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    return await run_in_threadpool(runtime.chats.unread_summary, user.id)


@router.get("/chats/{chat_id}")
async def get_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    chat = await run_in_threadpool(runtime.chats.require_participant, chat_id, user.id)
    return {"chat": _chat_view(chat, user.id)}


@router.delete("/chats/{chat_id}")
async def delete_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Hide the chat from the caller's list. Other participants are unaffected."""
    chat = await run_in_threadpool(runtime.chats.delete_chat_for, chat_id, user.id)
    return {"chat": _chat_view(chat, user.id)}


@router.post("/chats/{chat_id}/restore")
async def restore_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    chat = await run_in_threadpool(runtime.chats.restore_chat_for, chat_id, user.id)
    return {"chat": _chat_view(chat, user.id)}


@router.post("/chats/{chat_id}/leave")
async def leave_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Leave a group chat.

    The caller's live sockets stop receiving the chat's room events. When
    the chat drops below two participants it is deleted and its room is
    closed for everyone.
    """
    chat = await run_in_threadpool(runtime.chats.leave_chat, chat_id, user.id)
    room = chat_room(chat_id)
    if chat is None:
        runtime.manager.close_room(room)
    else:
        for socket_id in runtime.presence.sockets_for(user.id):
            runtime.manager.leave(room, socket_id)
    logger.info("%s left chat %s (deleted=%s)", user.id, chat_id, chat is None)
    return {"success": True, "deleted": chat is None}


@router.post("/chats/{chat_id}/read")
async def read_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Explicit read acknowledgment: the caller's unread counter goes to 0."""
    receipts = await run_in_threadpool(runtime.chats.read_chat, chat_id, user.id)
    await runtime.manager.publish(
        chat_room(chat_id),
        ServerEvent.MESSAGES_READ.value,
        {"chatId": chat_id, "userId": user.id},
    )
    return {"success": True, "receipts": receipts}


# =============================================================================
# Messages
# =============================================================================


@router.get("/chats/{chat_id}/messages")
async def list_messages(
    chat_id: str,
    before: Optional[str] = Query(None, description="Message id cursor (get messages before it)"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Paginated history, oldest first.

    Example:
        GET /chats/abc123/messages?limit=50
        GET /chats/abc123/messages?before=<oldest message id>&limit=50
    """
    messages, has_more = await run_in_threadpool(
        runtime.chats.list_messages, chat_id, user.id, before, limit
    )
    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


@router.post("/chats/{chat_id}/messages", status_code=201)
async def post_message(
    chat_id: str,
    body: MessageCreate,
    deliver: bool = Query(False, description="Publish new_message to the chat room"),
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    """Persist a message and count it as unread for the other participants.

    Socket clients follow up with ``send_message`` referencing the returned
    id to fan it out. With ``deliver=true`` the message is published here.
    """
    chat, message = await run_in_threadpool(runtime.chats.post_message, chat_id, user.id, body)
    if deliver:
        await runtime.manager.publish(
            chat_room(chat.id),
            ServerEvent.NEW_MESSAGE.value,
            {"chatId": chat.id, "message": message.model_dump(mode="json")},
        )
    return {"message": message.model_dump(mode="json")}


@router.patch("/chats/{chat_id}/messages/{message_id}")
async def edit_message(
    chat_id: str,
    message_id: str,
    body: EditMessageRequest,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    message = await run_in_threadpool(
        runtime.chats.edit_message, chat_id, message_id, user.id, body.text
    )
    data = message.model_dump(mode="json")
    await runtime.manager.publish(
        chat_room(chat_id), ServerEvent.MESSAGE_EDITED.value, {"chatId": chat_id, "message": data}
    )
    return {"message": data}


@router.delete("/chats/{chat_id}/messages/{message_id}")
async def delete_message(
    chat_id: str,
    message_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    message, chat = await run_in_threadpool(
        runtime.chats.delete_message, chat_id, message_id, user.id
    )
    last_message = chat.lastMessage.model_dump(mode="json") if chat.lastMessage else None
    await runtime.manager.publish(
        chat_room(chat_id),
        ServerEvent.MESSAGE_DELETED.value,
        {"chatId": chat_id, "messageId": message.id, "lastMessage": last_message},
    )
    return {"message": message.model_dump(mode="json"), "lastMessage": last_message}


@router.post("/chats/{chat_id}/messages/{message_id}/reactions")
async def react(
    chat_id: str,
    message_id: str,
    body: ReactionRequest,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    message = await run_in_threadpool(
        runtime.chats.react, chat_id, message_id, user.id, body.emoji
    )
    reactions = [r.model_dump(mode="json") for r in message.reactions]
    await runtime.manager.publish(
        chat_room(chat_id),
        ServerEvent.MESSAGE_REACTION.value,
        {"chatId": chat_id, "messageId": message.id, "reactions": reactions},
    )
    return {"messageId": message.id, "reactions": reactions}


@router.post("/chats/{chat_id}/messages/{message_id}/pin")
async def toggle_pin(
    chat_id: str,
    message_id: str,
    user: User = Depends(get_current_user),
    runtime: ChatRuntime = Depends(runtime_dependency),
) -> dict:
    message = await run_in_threadpool(runtime.chats.toggle_pin, chat_id, message_id, user.id)
    await runtime.manager.publish(
        chat_room(chat_id),
        ServerEvent.MESSAGE_PINNED.value,
        {"chatId": chat_id, "messageId": message.id, "isPinned": message.isPinned},
    )
    return {"message": message.model_dump(mode="json")}
