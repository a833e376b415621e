"""Per-socket session: authentication handshake and event dispatch.

State machine:

    CONNECTED --authenticate ok--> AUTHENTICATED
        |  ^                            |
        |  +-- authenticate failed      |
        +-------- transport close ------+--> DISCONNECTED (terminal)

While CONNECTED, every event except ``authenticate`` is rejected without
closing the connection; slow clients may send events before their token.

Side effects of a successful ``authenticate``:
    1. presence table entry for (user, socket)
    2. socket joins its personal room and the presence topic
    3. user record persisted as online with lastSeen=now
    4. ``user_status_change{online}`` published to every other session

Side effects of closing an AUTHENTICATED session:
    1. socket leaves every room, presence entry released
    2. if that was the user's last live socket: offline persisted, then
       ``user_status_change{offline}`` published
A session that never authenticated has no close side effects.

Every handler runs inside ``handle``, which catches and logs all errors so a
bad event, a flaky store or an unknown chat never takes the connection down.
"""
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from starlette.concurrency import run_in_threadpool

from app.errors import AuthenticationError, ChatError, ValidationError
from app.store.schemas import UserStatus

from .manager import PRESENCE_ROOM, chat_room, user_room
from .protocol import (
    ClientEvent,
    ServerEvent,
    ack_payload,
    parse_chat_id,
    parse_frame,
    parse_send_message,
)
from .runtime import ChatRuntime

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class ConnectionSession:
    """State of one live socket.

    Attributes:
        socket_id: Backend-assigned socket identity.
        state: Current SessionState.
        user_id: Owning user once authenticated, None before.
        joined_chats: Chat ids whose rooms this socket joined.
    """

    def __init__(self, runtime: ChatRuntime, socket_id: str) -> None:
        self.runtime = runtime
        self.socket_id = socket_id
        self.state = SessionState.CONNECTED
        self.user_id: Optional[str] = None
        self.joined_chats: Set[str] = set()
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            ClientEvent.AUTHENTICATE.value: self.authenticate,
            ClientEvent.JOIN_CHAT.value: self.join_chat,
            ClientEvent.LEAVE_CHAT.value: self.leave_chat,
            ClientEvent.SEND_MESSAGE.value: self.send_message,
            ClientEvent.TYPING_START.value: self.typing_start,
            ClientEvent.TYPING_STOP.value: self.typing_stop,
        }

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, raw: Any) -> None:
        """Dispatch one client frame. Never raises."""
        ack_id = raw.get("id") if isinstance(raw, dict) else None
        event = raw.get("event") if isinstance(raw, dict) else None
        try:
            frame = parse_frame(raw)
            handler = self._handlers.get(frame.event)
            if handler is None:
                raise ValidationError(f"Unknown event: {frame.event}")
            await handler(frame.data)
        except AuthenticationError as exc:
            logger.info("[WS] %s rejected on socket %s: %s", event, self.socket_id, exc.message)
            await self._ack(ack_id, False, exc.message)
            return
        except ChatError as exc:
            logger.warning("[WS] %s failed on socket %s: %s", event, self.socket_id, exc.message)
            await self._ack(ack_id, False, exc.message)
            return
        except Exception:
            logger.exception("[WS] %s crashed on socket %s", event, self.socket_id)
            await self._ack(ack_id, False, "Internal error")
            return
        await self._ack(ack_id, True)

    async def _ack(self, ack_id: Optional[Union[int, str]], ok: bool, error: Optional[str] = None) -> None:
        if ack_id is None or self.state is SessionState.DISCONNECTED:
            return
        await self.runtime.manager.send(
            self.socket_id, ServerEvent.ACK.value, ack_payload(ack_id, ok, error)
        )

    def _require_auth(self) -> str:
        if not self.is_authenticated or self.user_id is None:
            raise AuthenticationError("Not authenticated")
        return self.user_id

    # =========================================================================
    # Handshake
    # =========================================================================

    async def authenticate(self, token: Any) -> None:
        if self.is_authenticated:
            logger.debug("[WS] Socket %s already authenticated; ignoring", self.socket_id)
            return

        runtime = self.runtime
        user_id = runtime.tokens.verify(token)
        user = await run_in_threadpool(runtime.store.find_user_by_id, user_id)
        if user is None:
            raise AuthenticationError("Unknown user")

        self.user_id = user.id
        self.state = SessionState.AUTHENTICATED
        runtime.presence.register(user.id, self.socket_id)
        runtime.manager.join(user_room(user.id), self.socket_id)
        runtime.manager.join(PRESENCE_ROOM, self.socket_id)

        try:
            await run_in_threadpool(runtime.store.update_user_status, user.id, UserStatus.ONLINE)
        except ChatError as exc:
            logger.error("[WS] Could not persist online status for %s: %s", user.id, exc.message)

        await runtime.manager.publish(
            PRESENCE_ROOM,
            ServerEvent.USER_STATUS_CHANGE.value,
            {"userId": user.id, "status": UserStatus.ONLINE.value},
            exclude=self.socket_id,
        )
        logger.info("[WS] Socket %s authenticated as %s (%s)", self.socket_id, user.id, user.name)

    async def close(self) -> None:
        """Transport closed. Idempotent."""
        if self.state is SessionState.DISCONNECTED:
            return
        was_authenticated = self.is_authenticated
        self.state = SessionState.DISCONNECTED
        runtime = self.runtime
        runtime.manager.disconnect(self.socket_id)
        self.joined_chats.clear()
        if not was_authenticated or self.user_id is None:
            return

        user_id = self.user_id
        if not runtime.presence.unregister(user_id, self.socket_id):
            logger.info("[WS] %s still has live sockets; staying online", user_id)
            return

        try:
            await run_in_threadpool(runtime.store.update_user_status, user_id, UserStatus.OFFLINE)
        except ChatError as exc:
            logger.error("[WS] Could not persist offline status for %s: %s", user_id, exc.message)

        if runtime.presence.is_online(user_id):
            # Reconnected while the offline write was in flight.
            logger.info("[WS] %s reconnected during disconnect; restoring online", user_id)
            try:
                await run_in_threadpool(runtime.store.update_user_status, user_id, UserStatus.ONLINE)
            except ChatError as exc:
                logger.error("[WS] Could not restore online status for %s: %s", user_id, exc.message)
            return

        await runtime.manager.publish(
            PRESENCE_ROOM,
            ServerEvent.USER_STATUS_CHANGE.value,
            {"userId": user_id, "status": UserStatus.OFFLINE.value},
        )
        logger.info("[WS] %s went offline", user_id)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join_chat(self, data: Any) -> None:
        user_id = self._require_auth()
        chat_id = parse_chat_id(data)
        await run_in_threadpool(self.runtime.chats.require_participant, chat_id, user_id)
        self.runtime.manager.join(chat_room(chat_id), self.socket_id)
        self.joined_chats.add(chat_id)
        logger.info("[WS] %s joined chat %s", user_id, chat_id)

    async def leave_chat(self, data: Any) -> None:
        user_id = self._require_auth()
        chat_id = parse_chat_id(data)
        self.runtime.manager.leave(chat_room(chat_id), self.socket_id)
        self.joined_chats.discard(chat_id)
        logger.info("[WS] %s left chat %s", user_id, chat_id)

    # =========================================================================
    # Messaging
    # =========================================================================

    async def send_message(self, data: Any) -> None:
        user_id = self._require_auth()
        payload = parse_send_message(data)
        chat, message = await run_in_threadpool(
            self.runtime.chats.resolve_outgoing, payload.chatId, user_id, payload.message
        )

        delivered = await self.runtime.manager.publish(
            chat_room(chat.id),
            ServerEvent.NEW_MESSAGE.value,
            {"chatId": chat.id, "message": message.model_dump(mode="json")},
            exclude=self.socket_id,
        )
        logger.info("[WS] Message %s from %s delivered to %d sockets", message.id, user_id, delivered)

    async def typing_start(self, data: Any) -> None:
        await self._typing(data, True)

    async def typing_stop(self, data: Any) -> None:
        await self._typing(data, False)

    async def _typing(self, data: Any, is_typing: bool) -> None:
        user_id = self._require_auth()
        chat_id = parse_chat_id(data)
        await run_in_threadpool(self.runtime.chats.require_participant, chat_id, user_id)
        await self.runtime.manager.publish(
            chat_room(chat_id),
            ServerEvent.USER_TYPING.value,
            {"chatId": chat_id, "userId": user_id, "isTyping": is_typing},
            exclude=self.socket_id,
        )
