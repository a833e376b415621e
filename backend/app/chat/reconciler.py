"""Unread counter and read-receipt reconciliation.

Keeps per-participant unread counters consistent with the message log:

    delivery:  +1 for every participant except the sender, exactly once per
               message (guarded by ChatStore.claim_unread_delivery)
    read:      the reader's counter goes to 0; other counters are untouched

Chat membership is a data concept and is all that counts here. Whether a
participant's sockets joined the chat room, left it, or the participant
soft-deleted the chat makes no difference to counting.

The methods are synchronous store calls; async callers run them through
``run_in_threadpool``.
"""
import logging
from typing import List

from app.store.schemas import Chat, Message
from app.store.service import ChatStore

logger = logging.getLogger(__name__)


class UnreadReconciler:
    """Applies message deliveries and read acknowledgments to a chat."""

    def __init__(self, store: ChatStore) -> None:
        self._store = store

    def on_message_delivered(self, chat: Chat, message: Message) -> List[str]:
        """Count a message as unread for every participant but its sender.

        Safe to call more than once for the same message; only the first
        call increments.

        Returns:
            Participant ids whose counter was incremented (empty on replay).
        """
        if message.isDeleted:
            return []
        if not self._store.claim_unread_delivery(message.id):
            logger.debug("[Reconciler] Message %s already counted", message.id)
            return []

        recipients = chat.other_participants(message.sender)
        for participant_id in recipients:
            self._store.increment_unread(chat.id, participant_id)
        logger.info(
            "[Reconciler] Message %s in chat %s counted for %d participants",
            message.id, chat.id, len(recipients),
        )
        return recipients

    def on_read(self, chat: Chat, reader_id: str) -> int:
        """Explicit read acknowledgment by one participant.

        Resets the reader's counter, adds read receipts to the messages the
        reader had not read, and flags ``lastMessage`` as read when it was
        sent by someone else.

        Returns:
            Number of read receipts added.
        """
        self._store.reset_unread(chat.id, reader_id)
        added = self._store.mark_chat_read(chat.id, reader_id)
        self._store.set_last_message_read(chat.id, reader_id)
        logger.info(
            "[Reconciler] Chat %s read by %s (%d receipts)", chat.id, reader_id, added
        )
        return added
