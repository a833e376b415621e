"""WebSocket connection registry and room-based fan-out.

This module keeps track of live sockets and the rooms they have joined, and
publishes server events to rooms. It knows nothing about users, chats or
authentication; those live in ``app.chat.session``.

Key features:
    - Socket ids assigned by the backend on connect
    - Named rooms (chat rooms, personal user rooms, the presence topic)
    - Idempotent join/leave
    - Publish to a room with an optional excluded socket
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup

Room names:
    chat:<chatId>   - every socket that sent join_chat for the chat
    user:<userId>   - every authenticated socket of one user
    presence        - every authenticated socket (status change topic)

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent message delivery
    - Failed connections are removed from every room during broadcast
    - Delivery is fire-and-forget; a slow socket does not fail the publisher
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Protocol, Set

logger = logging.getLogger(__name__)

PRESENCE_ROOM = "presence"


def chat_room(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class Connection(Protocol):
    """Anything that can receive a JSON frame (a Starlette WebSocket in production)."""

    async def send_json(self, data: Any) -> None:
        ...


def make_frame(event: str, data: Any) -> dict:
    """Build a server -> client frame."""
    return {"event": event, "data": data}


class ConnectionManager:
    """Manages live sockets and their room memberships.

    Room membership (join/leave) and delivery (publish/send) are separate
    capabilities: joining never sends anything, publishing never changes
    membership except to drop sockets whose send failed.
    """

    def __init__(self) -> None:
        """Initialize empty connection manager."""
        # socket_id -> connection
        self.active_connections: Dict[str, Connection] = {}

        # room name -> socket ids
        self.rooms: Dict[str, Set[str]] = {}

        # socket_id -> room names (for disconnect handling)
        self.socket_rooms: Dict[str, Set[str]] = {}

    async def connect(self, websocket) -> str:
        """Accept a WebSocket and assign it a backend-generated socket id."""
        await websocket.accept()
        return self.register(websocket)

    def register(self, connection: Connection, socket_id: Optional[str] = None) -> str:
        """Track an already-accepted connection."""
        socket_id = socket_id or uuid.uuid4().hex
        self.active_connections[socket_id] = connection
        self.socket_rooms[socket_id] = set()
        logger.info(
            "[Manager] Socket %s connected (total: %d)", socket_id, len(self.active_connections)
        )
        return socket_id

    def disconnect(self, socket_id: str) -> Set[str]:
        """Forget a socket and remove it from every room.

        Returns:
            The rooms the socket was in.
        """
        self.active_connections.pop(socket_id, None)
        left = self.socket_rooms.pop(socket_id, set())
        for room in left:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(socket_id)
                if not members:
                    del self.rooms[room]
        logger.info(
            "[Manager] Socket %s disconnected (total: %d)", socket_id, len(self.active_connections)
        )
        return left

    # =========================================================================
    # Room membership
    # =========================================================================

    def join(self, room: str, socket_id: str) -> bool:
        """Add a socket to a room. Returns False if it was already a member."""
        if socket_id not in self.active_connections:
            return False
        members = self.rooms.setdefault(room, set())
        if socket_id in members:
            return False
        members.add(socket_id)
        self.socket_rooms[socket_id].add(room)
        return True

    def leave(self, room: str, socket_id: str) -> bool:
        """Remove a socket from a room. Returns False if it was not a member."""
        members = self.rooms.get(room)
        if not members or socket_id not in members:
            return False
        members.discard(socket_id)
        if not members:
            del self.rooms[room]
        self.socket_rooms.get(socket_id, set()).discard(room)
        return True

    def close_room(self, room: str) -> Set[str]:
        """Remove every socket from a room. Returns the former members."""
        members = self.rooms.pop(room, set())
        for socket_id in members:
            self.socket_rooms.get(socket_id, set()).discard(room)
        if members:
            logger.info("[Manager] Room %s closed (%d sockets removed)", room, len(members))
        return members

    def is_member(self, room: str, socket_id: str) -> bool:
        return socket_id in self.rooms.get(room, ())

    def get_room_members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, ()))

    def get_room_size(self, room: str) -> int:
        """Get the number of sockets joined to a room."""
        return len(self.rooms.get(room, ()))

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def publish(
        self,
        room: str,
        event: str,
        data: Any,
        exclude: Optional[str] = None,
    ) -> int:
        """Publish an event to every socket in a room concurrently.

        Args:
            room: Room to publish to.
            event: Server event name.
            data: JSON-serializable payload.
            exclude: Socket id that must not receive the event (the sender).

        Returns:
            Number of sockets the event was delivered to.
        """
        targets = [sid for sid in self.rooms.get(room, ()) if sid != exclude]
        return await self._deliver(targets, make_frame(event, data))

    async def send(self, socket_id: str, event: str, data: Any) -> bool:
        """Send an event to one socket."""
        return await self._deliver([socket_id], make_frame(event, data)) == 1

    async def _deliver(self, socket_ids: List[str], frame: dict) -> int:
        targets = [
            (sid, self.active_connections[sid])
            for sid in socket_ids
            if sid in self.active_connections
        ]
        if not targets:
            return 0

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for _, conn in targets],
            return_exceptions=True
        )

        # Remove failed connections
        failed = [sid for (sid, _), ok in zip(targets, results) if ok is not True]
        self._cleanup_connections(failed)
        return len(targets) - len(failed)

    async def _safe_send(self, connection: Connection, frame: dict) -> bool:
        """Send a frame to a connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed: List[str]) -> None:
        """Drop dead sockets from every room they joined.

        The socket itself stays registered until its transport reports the
        close, so disconnect side effects still run exactly once.
        """
        for socket_id in failed:
            for room in list(self.socket_rooms.get(socket_id, ())):
                self.leave(room, socket_id)
            logger.debug(f"Removed dead socket {socket_id} from its rooms")
