"""DuckDB-based message history storage.

Database Schema:
    chat_rooms table:
        - room_id: Room identifier (primary key)
        - created_at: When the room was first referenced (UTC)
    chat_messages table:
        - seq: Auto-incrementing insertion order (primary key)
        - id: Message identifier
        - room_id: Room the message belongs to
        - sender_id / sender_username: Sender identity
        - payload: Opaque message content
        - timestamp: ISO-8601 creation time as produced by the relay

Thread Safety:
    The DuckDB connection is NOT thread-safe. The relay runs on a single
    event loop, so every call arrives from the same thread.

Usage:
    store = DuckDBMessageStore(db_path="chat_messages.duckdb")
    store.append(room_id, message)
    messages = store.history(room_id)
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from app.chat.schemas import Message

from .base import MessageStore

logger = logging.getLogger(__name__)


class DuckDBMessageStore(MessageStore):
    """Append-only message log in an embedded DuckDB database.

    Args:
        db_path: Path to DuckDB file, or ``":memory:"``.
    """

    _db_path: str = "chat_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] DuckDB message store ready at %s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create sequence and tables if they don't exist (idempotent)."""
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_rooms (
                room_id VARCHAR PRIMARY KEY,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq BIGINT DEFAULT nextval('chat_messages_seq') PRIMARY KEY,
                id VARCHAR NOT NULL,
                room_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                sender_username VARCHAR NOT NULL,
                payload VARCHAR NOT NULL,
                timestamp VARCHAR NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_room ON chat_messages(room_id)"
        )

    def ensure_room(self, room_id: str) -> None:
        conn = self._get_connection()
        exists = conn.execute(
            "SELECT 1 FROM chat_rooms WHERE room_id = ?", [room_id]
        ).fetchone()
        if exists is None:
            conn.execute(
                "INSERT INTO chat_rooms (room_id, created_at) VALUES (?, ?)",
                [room_id, datetime.now(timezone.utc).replace(tzinfo=None)],
            )

    def has_room(self, room_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM chat_rooms WHERE room_id = ?", [room_id]
        ).fetchone()
        return row is not None

    def append(self, room_id: str, message: Message) -> None:
        self.ensure_room(room_id)
        self._get_connection().execute(
            """
            INSERT INTO chat_messages (id, room_id, sender_id, sender_username, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                room_id,
                message.senderId,
                message.senderUsername,
                message.payload,
                message.timestamp,
            ],
        )

    def history(self, room_id: str, limit: Optional[int] = None) -> List[Message]:
        conn = self._get_connection()
        if limit is not None and limit > 0:
            rows = conn.execute(
                """
                SELECT id, room_id, sender_id, sender_username, payload, timestamp
                FROM (
                    SELECT * FROM chat_messages
                    WHERE room_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                )
                ORDER BY seq ASC
                """,
                [room_id, limit],
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT id, room_id, sender_id, sender_username, payload, timestamp
                FROM chat_messages
                WHERE room_id = ?
                ORDER BY seq ASC
                """,
                [room_id],
            ).fetchall()

        return [
            Message(
                id=row[0],
                roomId=row[1],
                senderId=row[2],
                senderUsername=row[3],
                payload=row[4],
                timestamp=row[5],
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
