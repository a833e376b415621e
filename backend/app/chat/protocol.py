"""Socket channel wire format.

Client -> server frames:
    {"event": "<name>", "data": <payload>, "id": <optional ack id>}

Server -> client frames:
    {"event": "<name>", "data": <payload>}

A client frame that carries an ``id`` is answered on the same socket with
    {"event": "ack", "data": {"id": <id>, "ok": bool, "error": str | null}}
once the event has been handled. Acks are not echoes: the sender of
``send_message`` never receives its own ``new_message``.

Client events:
    authenticate        data: token string
    join_chat           data: chat id (or {"chatId": ...})
    leave_chat          data: chat id (or {"chatId": ...})
    send_message        data: {"chatId": ..., "message": {...}}
    typing_start        data: chat id (or {"chatId": ...})
    typing_stop         data: chat id (or {"chatId": ...})

Server events:
    new_message         {"chatId", "message"}
    user_typing         {"chatId", "userId", "isTyping"}
    user_status_change  {"userId", "status"}
    chat_created        {"chat"}
    messages_read       {"chatId", "userId"}
    message_reaction    {"chatId", "messageId", "reactions"}
    message_edited      {"chatId", "message"}
    message_deleted     {"chatId", "messageId", "lastMessage"}
    message_pinned      {"chatId", "messageId", "isPinned"}
"""
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.errors import ValidationError
from app.store.schemas import MessageCreate


class ClientEvent(str, Enum):
    AUTHENTICATE = "authenticate"
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    SEND_MESSAGE = "send_message"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"


class ServerEvent(str, Enum):
    ACK = "ack"
    NEW_MESSAGE = "new_message"
    USER_TYPING = "user_typing"
    USER_STATUS_CHANGE = "user_status_change"
    CHAT_CREATED = "chat_created"
    MESSAGES_READ = "messages_read"
    MESSAGE_REACTION = "message_reaction"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    MESSAGE_PINNED = "message_pinned"


class ClientFrame(BaseModel):
    event: str = Field(..., min_length=1)
    data: Any = None
    id: Optional[Union[int, str]] = None


class SendMessagePayload(BaseModel):
    """``send_message`` payload.

    ``message`` either references a message already persisted through the
    REST API (``{"id": ...}``) or carries a new one
    (``{"type": "text", "content": {"text": ...}}`` or the ``{"text": ...}``
    shorthand).
    """
    chatId: str = Field(..., min_length=1)
    message: Dict[str, Any]


def parse_frame(raw: Any) -> ClientFrame:
    if not isinstance(raw, dict):
        raise ValidationError("Frame must be a JSON object")
    try:
        return ClientFrame.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed frame: {exc.errors()[0]['msg']}") from exc


def parse_chat_id(data: Any) -> str:
    """Accept a bare chat id or ``{"chatId": ...}``."""
    if isinstance(data, dict):
        data = data.get("chatId")
    if not isinstance(data, str) or not data.strip():
        raise ValidationError("chatId is required")
    return data.strip()


def parse_send_message(data: Any) -> SendMessagePayload:
    if not isinstance(data, dict):
        raise ValidationError("send_message payload must be an object")
    try:
        return SendMessagePayload.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed send_message: {exc.errors()[0]['msg']}") from exc


def to_message_create(message: Dict[str, Any]) -> MessageCreate:
    """Build a MessageCreate from an inline socket message."""
    body = dict(message)
    if "content" not in body and "text" in body:
        body["content"] = {"text": body.pop("text")}
    try:
        return MessageCreate.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed message: {exc.errors()[0]['msg']}") from exc


def ack_payload(ack_id: Union[int, str], ok: bool, error: Optional[str] = None) -> dict:
    return {"id": ack_id, "ok": ok, "error": error}
