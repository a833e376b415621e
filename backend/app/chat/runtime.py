"""Process-wide wiring of the real-time chat components.

The presence table, connection manager, store and services are created
together and handed to the socket handler and REST routers through
``get_runtime``. Nothing in ``app.chat`` reaches for module-level state of
its own, so tests can build an isolated runtime per test with
``build_runtime`` and install it with ``set_runtime``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.auth.service import TokenService
from app.config import AppConfig, get_config
from app.store.service import ChatStore

from .manager import ConnectionManager
from .presence import PresenceTable
from .reconciler import UnreadReconciler
from .service import ChatService

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    config: AppConfig
    store: ChatStore
    tokens: TokenService
    presence: PresenceTable
    manager: ConnectionManager
    reconciler: UnreadReconciler
    chats: ChatService

    def close(self) -> None:
        self.store.close()


def build_runtime(config: AppConfig, store: Optional[ChatStore] = None) -> ChatRuntime:
    """Create every component from configuration.

    Args:
        config: Application configuration.
        store: Optional pre-built store (tests pass an in-memory one).
    """
    if store is None:
        store = ChatStore.get_instance(
            config.database.path,
            preview_length=config.chat.last_message_preview_length,
        )
    tokens = TokenService(
        secret_key=config.secrets.jwt.secret_key,
        algorithm=config.auth.algorithm,
        expire_minutes=config.auth.token_expire_minutes,
    )
    reconciler = UnreadReconciler(store)
    runtime = ChatRuntime(
        config=config,
        store=store,
        tokens=tokens,
        presence=PresenceTable(),
        manager=ConnectionManager(),
        reconciler=reconciler,
        chats=ChatService(store, reconciler, config.chat),
    )
    logger.info("Chat runtime ready (database=%s)", config.database.path)
    return runtime


_runtime: Optional[ChatRuntime] = None


def get_runtime() -> ChatRuntime:
    """Return the process runtime, building it from config on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_config())
    return _runtime


def set_runtime(runtime: Optional[ChatRuntime]) -> None:
    """Set (or clear) the process runtime."""
    global _runtime
    _runtime = runtime


def has_runtime() -> bool:
    return _runtime is not None
