"""Pydantic schemas for users, chats and messages.

These are the documents owned by the persistence layer. Field names use the
camelCase wire format so the same models are returned by the REST API and
carried inside socket events.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class UserStatus(str, Enum):
    """Public online status of a user."""
    ONLINE = "online"
    OFFLINE = "offline"
    AWAY = "away"


class ChatType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    """Type of chat message.

    Attributes:
        TEXT: Plain text message.
        IMAGE: Image with optional caption.
        VOICE: Voice recording.
        FILE: Generic file attachment.
        SYSTEM: Server-generated notice (member left, chat renamed, ...).
    """
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    FILE = "file"
    SYSTEM = "system"


# =============================================================================
# Users
# =============================================================================


class User(BaseModel):
    id: str
    name: str
    username: str
    avatar: str = ""
    status: UserStatus = UserStatus.OFFLINE
    lastSeen: Optional[datetime] = None


# =============================================================================
# Chats
# =============================================================================


class LastMessage(BaseModel):
    """Summary of the newest non-deleted message in a chat."""
    id: str
    text: str = ""
    sender: str
    timestamp: datetime
    isRead: bool = False


class UnreadCount(BaseModel):
    user: str
    count: int = Field(default=0, ge=0)


class Chat(BaseModel):
    """A direct or group conversation.

    Attributes:
        participants: Ordered, unique member ids; membership defines visibility.
        admins: Group admins (empty for direct chats).
        unreadCounts: At most one entry per participant.
        deletedBy: Participants who soft-deleted the chat from their list.
    """
    id: str
    type: ChatType
    name: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    admins: List[str] = Field(default_factory=list)
    lastMessage: Optional[LastMessage] = None
    unreadCounts: List[UnreadCount] = Field(default_factory=list)
    deletedBy: List[str] = Field(default_factory=list)
    isActive: bool = True
    createdAt: datetime
    updatedAt: datetime

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def unread_for(self, user_id: str) -> int:
        for entry in self.unreadCounts:
            if entry.user == user_id:
                return entry.count
        return 0

    def other_participants(self, user_id: str) -> List[str]:
        return [p for p in self.participants if p != user_id]


class ChatCreate(BaseModel):
    """Request body for creating a chat.

    The caller is always added to the participants, so a direct chat is
    created from a single other participant id.
    """
    type: ChatType
    participantIds: List[str] = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def _group_needs_name(self) -> "ChatCreate":
        if self.type == ChatType.GROUP and not (self.name and self.name.strip()):
            raise ValueError("Group chats require a name")
        return self


# =============================================================================
# Messages
# =============================================================================


class MessageContent(BaseModel):
    """Type-specific payload. Only the fields relevant to the type are set."""
    text: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    name: Optional[str] = None
    size: Optional[int] = None
    mimeType: Optional[str] = None
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None


class ReadReceipt(BaseModel):
    user: str
    readAt: datetime


class Reaction(BaseModel):
    user: str
    emoji: str
    createdAt: datetime


class Message(BaseModel):
    id: str
    chat: str
    sender: str
    type: MessageType = MessageType.TEXT
    content: MessageContent = Field(default_factory=MessageContent)
    replyTo: Optional[str] = None
    readBy: List[ReadReceipt] = Field(default_factory=list)
    reactions: List[Reaction] = Field(default_factory=list)
    isEdited: bool = False
    editedAt: Optional[datetime] = None
    isDeleted: bool = False
    deletedAt: Optional[datetime] = None
    isPinned: bool = False
    pinnedAt: Optional[datetime] = None
    createdAt: datetime

    def preview_text(self) -> str:
        """Text shown in the chat list for this message."""
        if self.content.text:
            return self.content.text
        if self.content.caption:
            return self.content.caption
        return f"[{self.type.value}]"


class MessageCreate(BaseModel):
    """Input schema for creating a message.

    Clients send this lightweight structure. The server adds id, chat,
    sender and createdAt.
    """
    type: MessageType = MessageType.TEXT
    content: MessageContent = Field(default_factory=MessageContent)
    replyTo: Optional[str] = None

    @model_validator(mode="after")
    def _content_matches_type(self) -> "MessageCreate":
        if self.type in (MessageType.TEXT, MessageType.SYSTEM):
            if not self.content.text or not self.content.text.strip():
                raise ValueError(f"{self.type.value} messages require content.text")
        elif not self.content.url:
            raise ValueError(f"{self.type.value} messages require content.url")
        return self
