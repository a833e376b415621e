"""In-memory presence table.

Maps each user to the set of live socket ids that authenticated as that
user. A user is online while the set is non-empty. The table is owned by the
process lifecycle (see ``app.chat.runtime``) and starts empty on every
restart; presence is advisory and only drives broadcast targeting and the
public ``isOnline`` flag.

Thread Safety:
    Mutations happen on the event loop, driven by each user's own
    connection events. REST handlers only read.
"""
import logging
from typing import Dict, Set

logger = logging.getLogger(__name__)


class PresenceTable:
    """user id -> set of socket ids."""

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[str]] = {}

    def register(self, user_id: str, socket_id: str) -> bool:
        """Record a live authenticated socket for a user.

        Returns:
            True if this is the user's first live socket (offline -> online).
        """
        sockets = self._sockets.setdefault(user_id, set())
        first = not sockets
        sockets.add(socket_id)
        logger.debug(
            "[Presence] register user=%s socket=%s (live=%d)", user_id, socket_id, len(sockets)
        )
        return first

    def unregister(self, user_id: str, socket_id: str) -> bool:
        """Drop one socket. No-op for unknown users or sockets.

        Returns:
            True if the user has no live socket left after this call and
            had at least one before it (online -> offline).
        """
        sockets = self._sockets.get(user_id)
        if not sockets or socket_id not in sockets:
            return False
        sockets.discard(socket_id)
        if sockets:
            return False
        del self._sockets[user_id]
        logger.debug("[Presence] user=%s has no live sockets", user_id)
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._sockets.get(user_id))

    def sockets_for(self, user_id: str) -> Set[str]:
        return set(self._sockets.get(user_id, ()))

    def __len__(self) -> int:
        return len(self._sockets)
