"""Persistence module for users, chats and messages."""

from .schemas import Chat, ChatType, Message, MessageCreate, User, UserStatus
from .service import ChatStore

__all__ = [
    "Chat",
    "ChatType",
    "ChatStore",
    "Message",
    "MessageCreate",
    "User",
    "UserStatus",
]
