"""DuckDB-backed persistence for users, chats and messages.

This module is the persistence collaborator of the real-time layer. It keeps
the same singleton shape as the other embedded-database services: one
connection per process, created lazily, closed on shutdown.

Database Schema:
    users               - identity, display data, online status, last seen
    chats               - chat document incl. the lastMessage summary columns
    chat_participants   - ordered membership (chat_id, user_id, position)
    chat_admins         - group admins
    chat_unread         - per-participant unread counter, PK (chat_id, user_id)
    chat_deleted_by     - soft-delete markers, PK (chat_id, user_id)
    messages            - message log ordered by a global sequence
    message_reads       - read receipts, PK (message_id, user_id)
    message_reactions   - one active reaction per user, PK (message_id, user_id)

Atomicity:
    Unread counters are only ever changed with single upsert statements
    (increment-or-insert, set-to-zero), never read-then-write. Delivery of a
    message to the unread counters is claimed once per message with a
    conditional UPDATE, so a replayed ``send_message`` cannot double count.
    All access goes through one connection guarded by a re-entrant lock;
    DuckDB connections must not be used from several threads at once.

Usage:
    store = ChatStore.get_instance(db_path=":memory:")
    chat = store.create_chat(ChatType.DIRECT, [alice.id, bob.id])
    store.increment_unread(chat.id, bob.id)
"""
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import duckdb

from app.errors import NotFoundError, PersistenceError

from .schemas import (
    Chat,
    ChatType,
    LastMessage,
    Message,
    MessageContent,
    MessageCreate,
    MessageType,
    Reaction,
    ReadReceipt,
    UnreadCount,
    User,
    UserStatus,
)

logger = logging.getLogger(__name__)

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS message_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id          VARCHAR PRIMARY KEY,
        name        VARCHAR NOT NULL,
        username    VARCHAR NOT NULL,
        avatar      VARCHAR NOT NULL DEFAULT '',
        status      VARCHAR NOT NULL DEFAULT 'offline',
        last_seen   TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id                   VARCHAR PRIMARY KEY,
        type                 VARCHAR NOT NULL,
        name                 VARCHAR,
        is_active            BOOLEAN NOT NULL DEFAULT true,
        created_at           TIMESTAMP NOT NULL,
        updated_at           TIMESTAMP NOT NULL,
        last_message_id      VARCHAR,
        last_message_text    VARCHAR,
        last_message_sender  VARCHAR,
        last_message_at      TIMESTAMP,
        last_message_read    BOOLEAN NOT NULL DEFAULT false
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_participants (
        chat_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        position  INTEGER NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_admins (
        chat_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_unread (
        chat_id   VARCHAR NOT NULL,
        user_id   VARCHAR NOT NULL,
        unread    INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_deleted_by (
        chat_id     VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        deleted_at  TIMESTAMP NOT NULL,
        PRIMARY KEY (chat_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT NOT NULL DEFAULT nextval('message_seq'),
        chat_id         VARCHAR NOT NULL,
        sender_id       VARCHAR NOT NULL,
        type            VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        reply_to        VARCHAR,
        is_edited       BOOLEAN NOT NULL DEFAULT false,
        edited_at       TIMESTAMP,
        is_deleted      BOOLEAN NOT NULL DEFAULT false,
        deleted_at      TIMESTAMP,
        is_pinned       BOOLEAN NOT NULL DEFAULT false,
        pinned_at       TIMESTAMP,
        unread_applied  BOOLEAN NOT NULL DEFAULT false,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id  VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        read_at     TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reactions (
        message_id  VARCHAR NOT NULL,
        user_id     VARCHAR NOT NULL,
        emoji       VARCHAR NOT NULL,
        created_at  TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
]

_MESSAGE_COLUMNS = (
    "id, chat_id, sender_id, type, content, reply_to, is_edited, edited_at, "
    "is_deleted, deleted_at, is_pinned, pinned_at, created_at"
)


def _utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP column type."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class ChatStore:
    """Singleton store for chat documents in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "chat.duckdb"

    def __init__(self, db_path: Optional[str] = None, preview_length: int = 500) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
            preview_length: Maximum length of ``lastMessage.text``.
        """
        if db_path:
            self._db_path = db_path
        self.preview_length = preview_length
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(
        cls, db_path: Optional[str] = None, preview_length: int = 500
    ) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            preview_length: Preview truncation (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path, preview_length=preview_length)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton. Primarily used by tests."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id)"
        )

    @contextmanager
    def _session(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Serialize access to the connection and translate driver errors."""
        with self._lock:
            try:
                yield self._get_connection()
            except duckdb.Error as exc:
                logger.error("[Store] Database error: %s", exc)
                raise PersistenceError(str(exc)) from exc

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(self, name: str, username: str, avatar: str = "") -> User:
        user_id = _new_id()
        with self._session() as conn:
            conn.execute(
                "INSERT INTO users (id, name, username, avatar) VALUES (?, ?, ?, ?)",
                [user_id, name, username.lower().strip(), avatar],
            )
            return self._fetch_user(conn, user_id)

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._session() as conn:
            return self._fetch_user(conn, user_id)

    def update_user_status(
        self,
        user_id: str,
        status: UserStatus,
        last_seen: Optional[datetime] = None,
    ) -> bool:
        """Persist a status change. Returns False if the user does not exist."""
        with self._session() as conn:
            row = conn.execute(
                "UPDATE users SET status = ?, last_seen = ? WHERE id = ? RETURNING id",
                [status.value, last_seen or _utcnow(), user_id],
            ).fetchone()
        return row is not None

    def _fetch_user(self, conn: duckdb.DuckDBPyConnection, user_id: str) -> Optional[User]:
        row = conn.execute(
            "SELECT id, name, username, avatar, status, last_seen FROM users WHERE id = ?",
            [user_id],
        ).fetchone()
        if row is None:
            return None
        return User(
            id=row[0],
            name=row[1],
            username=row[2],
            avatar=row[3],
            status=UserStatus(row[4]),
            lastSeen=row[5],
        )

    # =========================================================================
    # Chats
    # =========================================================================

    def create_chat(
        self,
        chat_type: ChatType,
        participants: List[str],
        name: Optional[str] = None,
        admins: Optional[List[str]] = None,
    ) -> Chat:
        """Insert a chat with its ordered, de-duplicated participant list."""
        members = list(dict.fromkeys(participants))
        chat_id = _new_id()
        now = _utcnow()
        with self._session() as conn:
            conn.begin()
            try:
                conn.execute(
                    "INSERT INTO chats (id, type, name, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [chat_id, chat_type.value, name, now, now],
                )
                for position, user_id in enumerate(members):
                    conn.execute(
                        "INSERT INTO chat_participants (chat_id, user_id, position) "
                        "VALUES (?, ?, ?)",
                        [chat_id, user_id, position],
                    )
                for user_id in dict.fromkeys(admins or []):
                    conn.execute(
                        "INSERT INTO chat_admins (chat_id, user_id) VALUES (?, ?)",
                        [chat_id, user_id],
                    )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
            logger.info(
                "[Store] Created %s chat %s with %d participants",
                chat_type.value, chat_id, len(members),
            )
            return self._fetch_chat(conn, chat_id)

    def find_chat_by_id(self, chat_id: str) -> Optional[Chat]:
        with self._session() as conn:
            return self._fetch_chat(conn, chat_id)

    def get_chat(self, chat_id: str) -> Chat:
        chat = self.find_chat_by_id(chat_id)
        if chat is None:
            raise NotFoundError("Chat", chat_id)
        return chat

    def find_direct_chat(self, user_a: str, user_b: str) -> Optional[Chat]:
        """Find the direct chat between exactly these two users."""
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT c.id FROM chats c
                WHERE c.type = 'direct'
                  AND (SELECT count(*) FROM chat_participants p WHERE p.chat_id = c.id) = 2
                  AND EXISTS (SELECT 1 FROM chat_participants p
                              WHERE p.chat_id = c.id AND p.user_id = ?)
                  AND EXISTS (SELECT 1 FROM chat_participants p
                              WHERE p.chat_id = c.id AND p.user_id = ?)
                ORDER BY c.created_at
                LIMIT 1
                """,
                [user_a, user_b],
            ).fetchone()
            return self._fetch_chat(conn, row[0]) if row else None

    def get_or_create_direct_chat(self, user_a: str, user_b: str) -> Tuple[Chat, bool]:
        """Return the direct chat between two users, creating it if missing.

        Lookup and insert run under the store lock, so concurrent callers
        for the same pair end up with one chat.

        Returns:
            Tuple of (chat, created).
        """
        with self._lock:
            existing = self.find_direct_chat(user_a, user_b)
            if existing is not None:
                return existing, False
            return self.create_chat(ChatType.DIRECT, [user_a, user_b]), True

    def list_chats_for_user(self, user_id: str, include_deleted: bool = False) -> List[Chat]:
        """Chats the user participates in, most recently active first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT c.id FROM chats c
                JOIN chat_participants p ON p.chat_id = c.id AND p.user_id = ?
                WHERE c.is_active
                  AND (? OR NOT EXISTS (
                        SELECT 1 FROM chat_deleted_by d
                        WHERE d.chat_id = c.id AND d.user_id = ?))
                ORDER BY COALESCE(c.last_message_at, c.created_at) DESC, c.id
                """,
                [user_id, include_deleted, user_id],
            ).fetchall()
            return [self._fetch_chat(conn, row[0]) for row in rows]

    def increment_unread(self, chat_id: str, user_id: str) -> None:
        """Atomic increment-or-insert of one participant's unread counter."""
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO chat_unread (chat_id, user_id, unread) VALUES (?, ?, 1)
                ON CONFLICT (chat_id, user_id) DO UPDATE SET unread = unread + 1
                """,
                [chat_id, user_id],
            )

    def reset_unread(self, chat_id: str, user_id: str) -> None:
        """Atomic set-to-zero of one participant's unread counter."""
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO chat_unread (chat_id, user_id, unread) VALUES (?, ?, 0)
                ON CONFLICT (chat_id, user_id) DO UPDATE SET unread = 0
                """,
                [chat_id, user_id],
            )

    def get_unread(self, chat_id: str, user_id: str) -> int:
        with self._session() as conn:
            row = conn.execute(
                "SELECT unread FROM chat_unread WHERE chat_id = ? AND user_id = ?",
                [chat_id, user_id],
            ).fetchone()
        return row[0] if row else 0

    def delete_for_user(self, chat_id: str, user_id: str) -> bool:
        """Hide the chat from one participant. Returns False if already hidden."""
        with self._session() as conn:
            existing = conn.execute(
                "SELECT 1 FROM chat_deleted_by WHERE chat_id = ? AND user_id = ?",
                [chat_id, user_id],
            ).fetchone()
            if existing is not None:
                return False
            conn.execute(
                "INSERT INTO chat_deleted_by (chat_id, user_id, deleted_at) VALUES (?, ?, ?)",
                [chat_id, user_id, _utcnow()],
            )
        return True

    def restore_for_user(self, chat_id: str, user_id: str) -> bool:
        """Undo a soft delete. Returns False if the chat was not hidden."""
        with self._session() as conn:
            row = conn.execute(
                "DELETE FROM chat_deleted_by WHERE chat_id = ? AND user_id = ? RETURNING user_id",
                [chat_id, user_id],
            ).fetchone()
        return row is not None

    def set_last_message_read(self, chat_id: str, reader_id: str) -> None:
        """Flag lastMessage as read when someone other than its sender reads it."""
        with self._session() as conn:
            conn.execute(
                """
                UPDATE chats SET last_message_read = true
                WHERE id = ? AND last_message_sender IS NOT NULL
                  AND last_message_sender <> ?
                """,
                [chat_id, reader_id],
            )

    def remove_participant(self, chat_id: str, user_id: str) -> Optional[Chat]:
        """Remove a member. Returns the updated chat, or None if it was deleted.

        A chat with fewer than two remaining participants is hard-deleted
        together with its messages, receipts and reactions.
        """
        with self._session() as conn:
            conn.begin()
            try:
                for table in ("chat_participants", "chat_admins", "chat_unread", "chat_deleted_by"):
                    conn.execute(
                        f"DELETE FROM {table} WHERE chat_id = ? AND user_id = ?",
                        [chat_id, user_id],
                    )
                remaining = conn.execute(
                    "SELECT count(*) FROM chat_participants WHERE chat_id = ?",
                    [chat_id],
                ).fetchone()[0]
                if remaining < 2:
                    self._delete_chat_cascade(conn, chat_id)
                else:
                    has_admin = conn.execute(
                        "SELECT count(*) FROM chat_admins WHERE chat_id = ?", [chat_id]
                    ).fetchone()[0]
                    chat_type = conn.execute(
                        "SELECT type FROM chats WHERE id = ?", [chat_id]
                    ).fetchone()[0]
                    if chat_type == ChatType.GROUP.value and not has_admin:
                        conn.execute(
                            """
                            INSERT INTO chat_admins (chat_id, user_id)
                            SELECT chat_id, user_id FROM chat_participants
                            WHERE chat_id = ? ORDER BY position LIMIT 1
                            """,
                            [chat_id],
                        )
                    conn.execute(
                        "UPDATE chats SET updated_at = ? WHERE id = ?", [_utcnow(), chat_id]
                    )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
            if remaining < 2:
                logger.info("[Store] Chat %s dropped below 2 participants; deleted", chat_id)
                return None
            return self._fetch_chat(conn, chat_id)

    def _delete_chat_cascade(self, conn: duckdb.DuckDBPyConnection, chat_id: str) -> None:
        conn.execute(
            "DELETE FROM message_reads WHERE message_id IN "
            "(SELECT id FROM messages WHERE chat_id = ?)",
            [chat_id],
        )
        conn.execute(
            "DELETE FROM message_reactions WHERE message_id IN "
            "(SELECT id FROM messages WHERE chat_id = ?)",
            [chat_id],
        )
        conn.execute("DELETE FROM messages WHERE chat_id = ?", [chat_id])
        for table in ("chat_participants", "chat_admins", "chat_unread", "chat_deleted_by"):
            conn.execute(f"DELETE FROM {table} WHERE chat_id = ?", [chat_id])
        conn.execute("DELETE FROM chats WHERE id = ?", [chat_id])

    def _fetch_chat(self, conn: duckdb.DuckDBPyConnection, chat_id: str) -> Optional[Chat]:
        row = conn.execute(
            """
            SELECT id, type, name, is_active, created_at, updated_at,
                   last_message_id, last_message_text, last_message_sender,
                   last_message_at, last_message_read
            FROM chats WHERE id = ?
            """,
            [chat_id],
        ).fetchone()
        if row is None:
            return None

        participants = [
            r[0] for r in conn.execute(
                "SELECT user_id FROM chat_participants WHERE chat_id = ? ORDER BY position",
                [chat_id],
            ).fetchall()
        ]
        admins = [
            r[0] for r in conn.execute(
                "SELECT user_id FROM chat_admins WHERE chat_id = ? ORDER BY user_id",
                [chat_id],
            ).fetchall()
        ]
        unread = [
            UnreadCount(user=r[0], count=r[1]) for r in conn.execute(
                "SELECT user_id, unread FROM chat_unread WHERE chat_id = ? ORDER BY user_id",
                [chat_id],
            ).fetchall()
        ]
        deleted_by = [
            r[0] for r in conn.execute(
                "SELECT user_id FROM chat_deleted_by WHERE chat_id = ? ORDER BY deleted_at",
                [chat_id],
            ).fetchall()
        ]

        last_message = None
        if row[6] is not None:
            last_message = LastMessage(
                id=row[6],
                text=row[7] or "",
                sender=row[8],
                timestamp=row[9],
                isRead=row[10],
            )

        return Chat(
            id=row[0],
            type=ChatType(row[1]),
            name=row[2],
            isActive=row[3],
            createdAt=row[4],
            updatedAt=row[5],
            participants=participants,
            admins=admins,
            lastMessage=last_message,
            unreadCounts=unread,
            deletedBy=deleted_by,
        )

    # =========================================================================
    # Messages
    # =========================================================================

    def create_message(self, chat_id: str, sender_id: str, payload: MessageCreate) -> Message:
        """Append a message and make it the chat's lastMessage."""
        message_id = _new_id()
        now = _utcnow()
        content = payload.content.model_dump_json(exclude_none=True)
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, chat_id, sender_id, type, content, reply_to, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [message_id, chat_id, sender_id, payload.type.value, content,
                 payload.replyTo, now],
            )
            message = self._fetch_message(conn, message_id)
            conn.execute(
                """
                UPDATE chats SET last_message_id = ?, last_message_text = ?,
                       last_message_sender = ?, last_message_at = ?,
                       last_message_read = false, updated_at = ?
                WHERE id = ?
                """,
                [message_id, message.preview_text()[: self.preview_length],
                 sender_id, now, now, chat_id],
            )
        return message

    def find_message(self, message_id: str) -> Optional[Message]:
        with self._session() as conn:
            return self._fetch_message(conn, message_id)

    def get_message(self, chat_id: str, message_id: str) -> Message:
        message = self.find_message(message_id)
        if message is None or message.chat != chat_id:
            raise NotFoundError("Message", message_id)
        return message

    def list_messages(
        self, chat_id: str, before: Optional[str] = None, limit: int = 50
    ) -> Tuple[List[Message], bool]:
        """Page of non-deleted messages, oldest first, plus a has-more flag.

        Args:
            chat_id: The chat to read.
            before: Message id cursor; only older messages are returned.
            limit: Page size.
        """
        with self._session() as conn:
            params: list = [chat_id]
            cursor_clause = ""
            if before:
                cursor_clause = "AND seq < (SELECT seq FROM messages WHERE id = ?)"
                params.append(before)
            params.append(limit + 1)
            rows = conn.execute(
                f"""
                SELECT id FROM messages
                WHERE chat_id = ? AND NOT is_deleted {cursor_clause}
                ORDER BY seq DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
            has_more = len(rows) > limit
            ids = [r[0] for r in rows[:limit]]
            ids.reverse()
            return [self._fetch_message(conn, mid) for mid in ids], has_more

    def claim_unread_delivery(self, message_id: str) -> bool:
        """Claim the one-time unread increment for a message.

        Returns True exactly once per message; every later call returns False.
        """
        with self._session() as conn:
            row = conn.execute(
                """
                UPDATE messages SET unread_applied = true
                WHERE id = ? AND NOT unread_applied
                RETURNING id
                """,
                [message_id],
            ).fetchone()
        return row is not None

    def mark_chat_read(self, chat_id: str, reader_id: str) -> int:
        """Add read receipts for every message the reader has not read yet.

        Returns:
            Number of receipts added.
        """
        with self._session() as conn:
            row = conn.execute(
                """
                INSERT INTO message_reads (message_id, user_id, read_at)
                SELECT m.id, ?, ? FROM messages m
                WHERE m.chat_id = ? AND m.sender_id <> ? AND NOT m.is_deleted
                  AND NOT EXISTS (SELECT 1 FROM message_reads r
                                  WHERE r.message_id = m.id AND r.user_id = ?)
                """,
                [reader_id, _utcnow(), chat_id, reader_id, reader_id],
            ).fetchone()
        return row[0] if row else 0

    def toggle_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        """Add, replace or remove a reaction.

        The same emoji twice removes it; a different emoji replaces the
        user's previous reaction. At most one reaction per user survives.
        """
        with self._session() as conn:
            existing = conn.execute(
                "SELECT emoji FROM message_reactions WHERE message_id = ? AND user_id = ?",
                [message_id, user_id],
            ).fetchone()
            if existing is None:
                conn.execute(
                    "INSERT INTO message_reactions (message_id, user_id, emoji, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    [message_id, user_id, emoji, _utcnow()],
                )
            elif existing[0] == emoji:
                conn.execute(
                    "DELETE FROM message_reactions WHERE message_id = ? AND user_id = ?",
                    [message_id, user_id],
                )
            else:
                conn.execute(
                    "UPDATE message_reactions SET emoji = ?, created_at = ? "
                    "WHERE message_id = ? AND user_id = ?",
                    [emoji, _utcnow(), message_id, user_id],
                )
            return self._fetch_message(conn, message_id)

    def edit_message(self, message_id: str, text: str) -> Message:
        with self._session() as conn:
            message = self._fetch_message(conn, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            content = message.content.model_copy(update={"text": text})
            now = _utcnow()
            conn.execute(
                "UPDATE messages SET content = ?, is_edited = true, edited_at = ? WHERE id = ?",
                [content.model_dump_json(exclude_none=True), now, message_id],
            )
            conn.execute(
                "UPDATE chats SET last_message_text = ? WHERE id = ? AND last_message_id = ?",
                [text[: self.preview_length], message.chat, message_id],
            )
            return self._fetch_message(conn, message_id)

    def soft_delete_message(self, message_id: str) -> Message:
        """Flag a message deleted and move lastMessage to the newest survivor."""
        with self._session() as conn:
            message = self._fetch_message(conn, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            conn.execute(
                "UPDATE messages SET is_deleted = true, deleted_at = ? WHERE id = ?",
                [_utcnow(), message_id],
            )
            self._refresh_last_message(conn, message.chat)
            return self._fetch_message(conn, message_id)

    def toggle_pin(self, message_id: str) -> Message:
        with self._session() as conn:
            message = self._fetch_message(conn, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            pinned = not message.isPinned
            conn.execute(
                "UPDATE messages SET is_pinned = ?, pinned_at = ? WHERE id = ?",
                [pinned, _utcnow() if pinned else None, message_id],
            )
            return self._fetch_message(conn, message_id)

    def _refresh_last_message(self, conn: duckdb.DuckDBPyConnection, chat_id: str) -> None:
        row = conn.execute(
            """
            SELECT m.id, m.sender_id, m.created_at,
                   EXISTS (SELECT 1 FROM message_reads r
                           WHERE r.message_id = m.id AND r.user_id <> m.sender_id)
            FROM messages m
            WHERE m.chat_id = ? AND NOT m.is_deleted
            ORDER BY m.seq DESC
            LIMIT 1
            """,
            [chat_id],
        ).fetchone()
        if row is None:
            conn.execute(
                """
                UPDATE chats SET last_message_id = NULL, last_message_text = NULL,
                       last_message_sender = NULL, last_message_at = NULL,
                       last_message_read = false
                WHERE id = ?
                """,
                [chat_id],
            )
            return
        latest = self._fetch_message(conn, row[0])
        conn.execute(
            """
            UPDATE chats SET last_message_id = ?, last_message_text = ?,
                   last_message_sender = ?, last_message_at = ?, last_message_read = ?
            WHERE id = ?
            """,
            [row[0], latest.preview_text()[: self.preview_length], row[1], row[2],
             row[3], chat_id],
        )

    def _fetch_message(
        self, conn: duckdb.DuckDBPyConnection, message_id: str
    ) -> Optional[Message]:
        row = conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
            [message_id],
        ).fetchone()
        if row is None:
            return None
        read_by = [
            ReadReceipt(user=r[0], readAt=r[1]) for r in conn.execute(
                "SELECT user_id, read_at FROM message_reads WHERE message_id = ? "
                "ORDER BY read_at, user_id",
                [message_id],
            ).fetchall()
        ]
        reactions = [
            Reaction(user=r[0], emoji=r[1], createdAt=r[2]) for r in conn.execute(
                "SELECT user_id, emoji, created_at FROM message_reactions "
                "WHERE message_id = ? ORDER BY created_at, user_id",
                [message_id],
            ).fetchall()
        ]
        return Message(
            id=row[0],
            chat=row[1],
            sender=row[2],
            type=MessageType(row[3]),
            content=MessageContent.model_validate(json.loads(row[4])),
            replyTo=row[5],
            isEdited=row[6],
            editedAt=row[7],
            isDeleted=row[8],
            deletedAt=row[9],
            isPinned=row[10],
            pinnedAt=row[11],
            createdAt=row[12],
            readBy=read_by,
            reactions=reactions,
        )
