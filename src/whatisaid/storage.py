"""SQLite storage with field-level encryption of confidential columns.

``display_name`` and ``tags`` (conversations) and ``author`` and ``content``
(messages) only ever reach the database as ciphertext envelopes produced by
the store's ``CryptoService``. The KDF salt, the iteration count and a
key-check envelope are kept in ``app_metadata`` so the same password
reconstructs the same key when the store is re-opened.
"""

from __future__ import annotations

import base64
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator

from .config import PBKDF2_ITERATIONS, SQLITE_PATH
from .crypto import CryptoService
from .errors import (
    ClosedError,
    DecryptionError,
    EncryptionNotReadyError,
    NotInitializedError,
    PersistenceError,
)
from .models import ChatMessage, Conversation

logger = logging.getLogger(__name__)

KEY_CHECK_PLAINTEXT = "whatisaid-key-check-v1"

ORDERABLE_COLUMNS = ("end_time", "start_time", "id", "source_app")


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


class ConversationStore:
    """SQLite-backed storage for conversations and messages."""

    def __init__(self, db_path: Path, crypto: CryptoService):
        self.db_path = Path(db_path)
        self.crypto = crypto
        self.conn: sqlite3.Connection | None = None
        self.state = StoreState.UNINITIALIZED

    def __enter__(self) -> "ConversationStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -- lifecycle ---------------------------------------------------------

    def initialize_database(self):
        """Open the database and create tables and indexes if missing.

        Safe to call repeatedly.
        """
        if self.state is StoreState.CLOSED:
            raise ClosedError("Store has been closed")

        if self.conn is None:
            try:
                if str(self.db_path) != ":memory:":
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                # Autocommit mode: transactions are opened explicitly with BEGIN.
                # Callers serialize access; the importer is single-flight.
                self.conn = sqlite3.connect(
                    str(self.db_path), isolation_level=None, check_same_thread=False
                )
                self.conn.row_factory = sqlite3.Row
                self.conn.execute("PRAGMA journal_mode=WAL")
                self.conn.execute("PRAGMA foreign_keys=ON")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not open database {self.db_path}: {exc}") from exc

        self._migrate()
        self.state = StoreState.READY
        logger.debug("Database ready at %s", self.db_path)

    def _migrate(self):
        try:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    source_app TEXT NOT NULL,
                    chat_type TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    start_time INTEGER NOT NULL,
                    end_time INTEGER NOT NULL,
                    tags TEXT NOT NULL,
                    CHECK (start_time <= end_time)
                );

                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    timestamp_utc INTEGER NOT NULL,
                    author TEXT NOT NULL,
                    content TEXT NOT NULL,
                    content_type TEXT NOT NULL CHECK (content_type IN ('text', 'code')),
                    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                );

                CREATE INDEX IF NOT EXISTS idx_messages_conversation_id
                    ON messages(conversation_id);

                CREATE INDEX IF NOT EXISTS idx_messages_timestamp
                    ON messages(timestamp_utc);

                CREATE INDEX IF NOT EXISTS idx_conversations_start_time
                    ON conversations(start_time);

                CREATE INDEX IF NOT EXISTS idx_conversations_end_time
                    ON conversations(end_time);

                CREATE TABLE IF NOT EXISTS app_metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS import_metadata (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    import_time TEXT NOT NULL,
                    source_format TEXT,
                    conversations_imported INTEGER,
                    messages_imported INTEGER
                );
            """)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Schema migration failed: {exc}") from exc

    def close(self):
        """Release the connection. Later operations raise ``ClosedError``."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        self.state = StoreState.CLOSED

    def _require_ready(self):
        if self.state is StoreState.CLOSED:
            raise ClosedError("Store has been closed")
        if self.state is not StoreState.READY or self.conn is None:
            raise NotInitializedError("Database not initialized; call initialize_database() first")

    def _require_encryption(self):
        self._require_ready()
        if not self.crypto.is_initialized():
            raise EncryptionNotReadyError("Encryption key is not available; unlock the store first")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    # -- key material --------------------------------------------------------

    def _get_meta(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM app_metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def has_encryption_key(self) -> bool:
        """Whether a salt has already been provisioned for this store."""
        self._require_ready()
        return self._get_meta("kdf_salt") is not None

    def unlock(self, password: str):
        """Derive the key for this store, provisioning a salt on first use.

        Raises ``DecryptionError`` if ``password`` does not match the one the
        store was created with.
        """
        self._require_ready()
        try:
            salt_b64 = self._get_meta("kdf_salt")
            if salt_b64 is None:
                salt = self.crypto.initialize_encryption(password)
                with self._transaction() as conn:
                    conn.executemany(
                        "INSERT OR REPLACE INTO app_metadata (key, value) VALUES (?, ?)",
                        [
                            ("kdf_salt", base64.b64encode(salt).decode("ascii")),
                            ("kdf_iterations", str(self.crypto.iterations)),
                            ("key_check", self.crypto.encrypt(KEY_CHECK_PLAINTEXT)),
                        ],
                    )
                logger.info("Provisioned a new encryption key for %s", self.db_path)
                return

            iterations = int(self._get_meta("kdf_iterations") or PBKDF2_ITERATIONS)
            key_check = self._get_meta("key_check")
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read key metadata: {exc}") from exc

        self.crypto.initialize_encryption(
            password, salt=base64.b64decode(salt_b64), iterations=iterations
        )
        try:
            matches = key_check is not None and self.crypto.constant_time_compare(
                self.crypto.decrypt(key_check), KEY_CHECK_PLAINTEXT
            )
        except DecryptionError:
            matches = False
        if not matches:
            self.crypto.clear_key()
            raise DecryptionError("Wrong password for this store")
        logger.info("Unlocked store %s", self.db_path)

    # -- writes ----------------------------------------------------------------

    def save_conversation(self, conv: Conversation):
        """Insert or fully replace a conversation row."""
        self._require_encryption()
        try:
            self._upsert_conversation(self.conn, conv)
        except (sqlite3.Error, OverflowError) as exc:
            raise PersistenceError(f"Failed to save conversation {conv.id}: {exc}") from exc

    def save_messages(self, messages: list[ChatMessage]):
        """Upsert a batch of messages in one transaction: all rows or none."""
        self._require_encryption()
        if not messages:
            return

        try:
            with self._transaction() as conn:
                self._upsert_messages(conn, messages)
        except (sqlite3.Error, OverflowError) as exc:
            logger.warning("Rolled back batch of %d messages", len(messages))
            raise PersistenceError(f"Failed to save messages: {exc}") from exc

        logger.debug("Saved %d messages", len(messages))

    def save_conversation_with_messages(self, conv: Conversation, messages: list[ChatMessage]):
        """Upsert a conversation and its messages together.

        Both land in one transaction, so a failing message leaves no trace of
        the conversation row either.
        """
        self._require_encryption()
        try:
            with self._transaction() as conn:
                self._upsert_conversation(conn, conv)
                self._upsert_messages(conn, messages)
        except (sqlite3.Error, OverflowError) as exc:
            logger.warning("Rolled back conversation %s and %d messages", conv.id, len(messages))
            raise PersistenceError(f"Failed to save conversation {conv.id}: {exc}") from exc

        logger.debug("Saved conversation %s with %d messages", conv.id, len(messages))

    def _upsert_conversation(self, conn: sqlite3.Connection, conv: Conversation):
        conn.execute(
            """INSERT INTO conversations (id, source_app, chat_type, display_name,
               start_time, end_time, tags)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   source_app = excluded.source_app,
                   chat_type = excluded.chat_type,
                   display_name = excluded.display_name,
                   start_time = excluded.start_time,
                   end_time = excluded.end_time,
                   tags = excluded.tags""",
            (conv.id, conv.source_app, conv.chat_type, self.crypto.encrypt(conv.display_name),
             conv.start_time, conv.end_time,
             self.crypto.encrypt(json.dumps(conv.tags, ensure_ascii=False))),
        )

    def _upsert_messages(self, conn: sqlite3.Connection, messages: list[ChatMessage]):
        for msg in messages:
            conn.execute(
                """INSERT INTO messages (message_id, conversation_id, timestamp_utc,
                   author, content, content_type)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(message_id) DO UPDATE SET
                       conversation_id = excluded.conversation_id,
                       timestamp_utc = excluded.timestamp_utc,
                       author = excluded.author,
                       content = excluded.content,
                       content_type = excluded.content_type""",
                (msg.message_id, msg.conversation_id, msg.timestamp_utc,
                 self.crypto.encrypt(msg.author), self.crypto.encrypt(msg.content),
                 msg.content_type),
            )

    def record_import(self, source_format: str, conversations: int, messages: int):
        self._require_ready()
        try:
            self.conn.execute(
                "INSERT INTO import_metadata (import_time, source_format, conversations_imported, messages_imported) VALUES (?, ?, ?, ?)",
                (datetime.now(timezone.utc).isoformat(), source_format, conversations, messages),
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to record import: {exc}") from exc

    # -- reads -------------------------------------------------------------------

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            source_app=row["source_app"],
            chat_type=row["chat_type"],
            display_name=self.crypto.decrypt(row["display_name"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            tags=json.loads(self.crypto.decrypt(row["tags"])),
        )

    def get_conversations(
        self,
        order_by: str = "end_time",
        limit: int = 50,
        offset: int = 0,
        descending: bool = True,
    ) -> list[Conversation]:
        """One page of conversations, decrypted, ordered by ``order_by``."""
        if order_by not in ORDERABLE_COLUMNS:
            raise ValueError(f"Cannot order by {order_by!r}; choose from {', '.join(ORDERABLE_COLUMNS)}")
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        self._require_encryption()

        direction = "DESC" if descending else "ASC"
        try:
            rows = self.conn.execute(
                f"""SELECT * FROM conversations
                    ORDER BY {order_by} {direction}, id {direction}
                    LIMIT ? OFFSET ?""",
                (limit, offset),
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to get conversations: {exc}") from exc

        return [self._row_to_conversation(r) for r in rows]

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        self._require_encryption()
        try:
            row = self.conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to get conversation: {exc}") from exc
        return self._row_to_conversation(row) if row else None

    def get_messages_for_conversation(self, conversation_id: str) -> list[ChatMessage]:
        """All messages of a conversation, oldest first, decrypted."""
        self._require_encryption()
        try:
            rows = self.conn.execute(
                """SELECT * FROM messages
                   WHERE conversation_id = ?
                   ORDER BY timestamp_utc ASC, rowid ASC""",
                (conversation_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to get messages: {exc}") from exc

        return [
            ChatMessage(
                message_id=r["message_id"],
                conversation_id=r["conversation_id"],
                timestamp_utc=r["timestamp_utc"],
                author=self.crypto.decrypt(r["author"]),
                content=self.crypto.decrypt(r["content"]),
                content_type=r["content_type"],
            )
            for r in rows
        ]

    def get_conversation_count(self) -> int:
        self._require_ready()
        try:
            return self.conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to count conversations: {exc}") from exc

    def get_message_count(self) -> int:
        self._require_ready()
        try:
            return self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to count messages: {exc}") from exc

    def get_stats(self) -> dict:
        """Get overall database statistics. Touches no confidential column."""
        self._require_ready()
        conv_count = self.get_conversation_count()
        msg_count = self.get_message_count()

        try:
            date_range = self.conn.execute(
                "SELECT MIN(start_time), MAX(end_time) FROM conversations"
            ).fetchone()
            sources = self.conn.execute(
                """SELECT source_app, COUNT(*) as cnt FROM conversations
                   GROUP BY source_app ORDER BY cnt DESC"""
            ).fetchall()
            imports = self.conn.execute("SELECT COUNT(*) FROM import_metadata").fetchone()[0]
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to compute stats: {exc}") from exc

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "date_range_start": _format_ts(date_range[0]),
            "date_range_end": _format_ts(date_range[1]),
            "sources": [{"source_app": r[0], "count": r[1]} for r in sources],
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
            "imports": imports,
        }


def open_store(
    password: str,
    db_path: Path = SQLITE_PATH,
    crypto: CryptoService | None = None,
) -> ConversationStore:
    """Open (creating if needed) and unlock the store at ``db_path``."""
    store = ConversationStore(db_path, crypto or CryptoService())
    store.initialize_database()
    try:
        store.unlock(password)
    except Exception:
        store.close()
        raise
    return store


def _format_ts(ts: int | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")
