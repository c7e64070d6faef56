"""DuckDB connection shared by the user directory, room registry and message store.

Database Schema:
    users:             caller identity overlay (role, ban/mute flags, lastSeen)
    rooms:             flat room registry with the denormalized lastMessage
    messages:          append-mostly message log (text/deleted are mutable)
    message_reactions: (message_id, user_id, emoji) membership facts
    message_reads:     (message_id, user_id) receipts with read time

Thread Safety:
    The DuckDB connection is NOT thread-safe. All access happens from the
    single asyncio event loop that runs the FastAPI app, and every call is
    synchronous, so no two statements interleave.

Usage:
    db = Database.get_instance(db_path=":memory:")
    rows = db.execute("SELECT * FROM rooms").fetchall()
"""
import logging
from typing import Any, List, Optional, Sequence

import duckdb

from roomchat.errors import TransientStoreError

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id           VARCHAR PRIMARY KEY,
        display_name VARCHAR NOT NULL,
        avatar       VARCHAR,
        role         VARCHAR NOT NULL DEFAULT 'user',
        is_banned    BOOLEAN NOT NULL DEFAULT FALSE,
        is_muted     BOOLEAN NOT NULL DEFAULT FALSE,
        last_seen    TIMESTAMP,
        created_at   TIMESTAMP NOT NULL,
        updated_at   TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id           VARCHAR PRIMARY KEY,
        key          VARCHAR NOT NULL UNIQUE,
        title        VARCHAR NOT NULL,
        avatar       VARCHAR,
        last_message VARCHAR,
        created_at   TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id                VARCHAR PRIMARY KEY,
        room_id           VARCHAR NOT NULL,
        sender_id         VARCHAR NOT NULL,
        sender_name       VARCHAR NOT NULL,
        sender_avatar     VARCHAR,
        text              VARCHAR NOT NULL,
        attachments       VARCHAR NOT NULL,
        reply_to          VARCHAR,
        reply_to_owner_id VARCHAR,
        mentions          VARCHAR NOT NULL,
        created_at        TIMESTAMP NOT NULL,
        edited_at         TIMESTAMP,
        deleted           BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS message_reactions (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        emoji      VARCHAR NOT NULL,
        reacted_at TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id, emoji)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id VARCHAR NOT NULL,
        user_id    VARCHAR NOT NULL,
        read_at    TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id)
    )
    """,
]


class Database:
    """Singleton owner of the DuckDB connection.

    Attributes:
        _instance: Singleton instance.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["Database"] = None
    _db_path: str = "roomchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Database] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "Database":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables and indexes. Safe to call multiple times."""
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> duckdb.DuckDBPyConnection:
        """Run one statement, mapping driver failures to TransientStoreError."""
        try:
            return self._get_connection().execute(sql, list(params or []))
        except duckdb.Error as exc:
            logger.error("[Database] Statement failed: %s", exc)
            raise TransientStoreError() from exc

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        return self.execute(sql, params).fetchall()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
