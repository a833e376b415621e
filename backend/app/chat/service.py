"""Chat operations shared by the REST surface and the socket channel.

Every method is synchronous (it only talks to the embedded store) and
enforces membership rules before touching data:

    - only participants can see or act on a chat; to everyone else it does
      not exist (NotFoundError)
    - only a message's sender can edit or delete it
    - a message is counted as unread when it is persisted; counting is
      delegated to the UnreadReconciler
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from app.config import ChatSettings
from app.errors import NotFoundError, PermissionDeniedError, ValidationError
from app.store.schemas import (
    Chat,
    ChatCreate,
    ChatType,
    Message,
    MessageCreate,
    MessageType,
)
from app.store.service import ChatStore

from .protocol import to_message_create
from .reconciler import UnreadReconciler

logger = logging.getLogger(__name__)


class ChatService:
    """Membership-checked chat and message operations."""

    def __init__(
        self,
        store: ChatStore,
        reconciler: UnreadReconciler,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._settings = settings or ChatSettings()

    # =========================================================================
    # Chats
    # =========================================================================

    def require_participant(self, chat_id: str, user_id: str) -> Chat:
        chat = self._store.find_chat_by_id(chat_id)
        if chat is None or not chat.is_participant(user_id):
            raise NotFoundError("Chat", chat_id)
        return chat

    def create_chat(self, creator_id: str, body: ChatCreate) -> Tuple[Chat, bool]:
        """Create a direct or group chat.

        A direct chat between two users is unique: asking for it again
        returns the existing one (restored for the creator if they had
        soft-deleted it).

        Returns:
            Tuple of (chat, created).
        """
        members = list(dict.fromkeys([creator_id, *body.participantIds]))
        for member_id in members:
            if self._store.find_user_by_id(member_id) is None:
                raise NotFoundError("User", member_id)

        if body.type == ChatType.DIRECT:
            if len(members) != 2:
                raise ValidationError("Direct chats have exactly two participants")
            chat, created = self._store.get_or_create_direct_chat(members[0], members[1])
            if not created and self._store.restore_for_user(chat.id, creator_id):
                logger.info("Restored direct chat %s for %s", chat.id, creator_id)
                chat = self._store.get_chat(chat.id)
            return chat, created

        if len(members) < 2:
            raise ValidationError("Group chats need at least two participants")
        chat = self._store.create_chat(
            ChatType.GROUP, members, name=body.name.strip(), admins=[creator_id]
        )
        return chat, True

    def list_chats(self, user_id: str) -> List[Chat]:
        return self._store.list_chats_for_user(user_id)

    def unread_summary(self, user_id: str) -> Dict[str, Any]:
        chats = self._store.list_chats_for_user(user_id)
        per_chat = {chat.id: chat.unread_for(user_id) for chat in chats}
        return {"total": sum(per_chat.values()), "chats": per_chat}

    def read_chat(self, chat_id: str, user_id: str) -> int:
        chat = self.require_participant(chat_id, user_id)
        return self._reconciler.on_read(chat, user_id)

    def delete_chat_for(self, chat_id: str, user_id: str) -> Chat:
        self.require_participant(chat_id, user_id)
        self._store.delete_for_user(chat_id, user_id)
        return self._store.get_chat(chat_id)

    def restore_chat_for(self, chat_id: str, user_id: str) -> Chat:
        self.require_participant(chat_id, user_id)
        self._store.restore_for_user(chat_id, user_id)
        return self._store.get_chat(chat_id)

    def leave_chat(self, chat_id: str, user_id: str) -> Optional[Chat]:
        """Leave a group chat. Returns None when the chat was deleted."""
        chat = self.require_participant(chat_id, user_id)
        if chat.type != ChatType.GROUP:
            raise ValidationError("Only group chats can be left")
        return self._store.remove_participant(chat_id, user_id)

    # =========================================================================
    # Messages
    # =========================================================================

    def _check_text(self, text: Optional[str]) -> None:
        limit = self._settings.max_text_length
        if text and len(text) > limit:
            raise ValidationError(f"Message text exceeds {limit} characters")

    def post_message(self, chat_id: str, sender_id: str, body: MessageCreate) -> Tuple[Chat, Message]:
        chat = self.require_participant(chat_id, sender_id)
        if body.type == MessageType.SYSTEM:
            raise ValidationError("System messages are server-generated")
        self._check_text(body.content.text)
        if body.replyTo:
            self._store.get_message(chat_id, body.replyTo)
        message = self._store.create_message(chat_id, sender_id, body)
        self._reconciler.on_message_delivered(chat, message)
        return chat, message

    def resolve_outgoing(
        self, chat_id: str, sender_id: str, message: Dict[str, Any]
    ) -> Tuple[Chat, Message]:
        """Turn a ``send_message`` payload into a persisted message.

        A payload with an ``id`` refers to a message the sender already
        created through the REST API; anything else is persisted here.
        """
        message_id = message.get("id")
        if not message_id:
            return self.post_message(chat_id, sender_id, to_message_create(message))

        chat = self.require_participant(chat_id, sender_id)
        stored = self._store.get_message(chat_id, str(message_id))
        if stored.sender != sender_id:
            raise PermissionDeniedError("Cannot deliver another user's message")
        if stored.isDeleted:
            raise ValidationError("Message was deleted")
        return chat, stored

    def list_messages(
        self,
        chat_id: str,
        user_id: str,
        before: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Message], bool]:
        self.require_participant(chat_id, user_id)
        limit = min(limit or self._settings.default_page_size, self._settings.max_page_size)
        return self._store.list_messages(chat_id, before=before, limit=limit)

    def react(self, chat_id: str, message_id: str, user_id: str, emoji: str) -> Message:
        self.require_participant(chat_id, user_id)
        message = self._store.get_message(chat_id, message_id)
        if message.isDeleted:
            raise ValidationError("Cannot react to a deleted message")
        return self._store.toggle_reaction(message_id, user_id, emoji)

    def edit_message(self, chat_id: str, message_id: str, user_id: str, text: str) -> Message:
        self.require_participant(chat_id, user_id)
        message = self._store.get_message(chat_id, message_id)
        if message.sender != user_id:
            raise PermissionDeniedError("Only the sender can edit a message")
        if message.type != MessageType.TEXT or message.isDeleted:
            raise ValidationError("Only live text messages can be edited")
        if not text.strip():
            raise ValidationError("Message text is required")
        self._check_text(text)
        return self._store.edit_message(message_id, text)

    def delete_message(self, chat_id: str, message_id: str, user_id: str) -> Tuple[Message, Chat]:
        self.require_participant(chat_id, user_id)
        message = self._store.get_message(chat_id, message_id)
        if message.sender != user_id:
            raise PermissionDeniedError("Only the sender can delete a message")
        deleted = self._store.soft_delete_message(message_id)
        return deleted, self._store.get_chat(chat_id)

    def toggle_pin(self, chat_id: str, message_id: str, user_id: str) -> Message:
        self.require_participant(chat_id, user_id)
        message = self._store.get_message(chat_id, message_id)
        if message.isDeleted:
            raise ValidationError("Cannot pin a deleted message")
        return self._store.toggle_pin(message_id)
