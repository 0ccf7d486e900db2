"""SQLite message store for local development and tests."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from src.models import InboundMessage, StatusUpdate, StorageReference
from src.store.base import (
    CHANNEL_TYPE,
    STATUS_COLUMNS,
    PersistenceError,
    message_to_row,
    row_to_message,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS messaging_messages (
    external_message_id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    channel_id TEXT,
    channel_type TEXT NOT NULL,
    direction TEXT NOT NULL,
    sender_type TEXT NOT NULL,
    external_user_id TEXT NOT NULL,
    user_name TEXT,
    message_type TEXT NOT NULL,
    content TEXT,
    media_url TEXT,
    media_mime_type TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    sent_at TEXT NOT NULL,
    delivered_at TEXT,
    read_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messaging_channels (
    meta_phone_number_id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL,
    channel_type TEXT NOT NULL DEFAULT 'whatsapp'
);
"""


class SQLiteMessageStore:
    """SQLite-backed message store.

    The connection is shared across the worker threads that
    ``asyncio.to_thread`` dispatches to, so every statement runs under a lock.
    """

    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def _execute(self, sql: str, params: tuple[object, ...] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        try:
            with self._lock:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    def _query(self, sql: str, params: tuple[object, ...] = ()) -> list[sqlite3.Row]:
        try:
            with self._lock:
                return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    def save(self, message: InboundMessage) -> bool:
        row = message_to_row(message)
        row["metadata"] = json.dumps(row["metadata"])
        row["created_at"] = datetime.now(UTC).isoformat()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        written = self._execute(
            f"INSERT INTO messaging_messages ({columns}) VALUES ({placeholders})"  # noqa: S608
            " ON CONFLICT(external_message_id) DO NOTHING",
            tuple(row.values()),
        )
        return written == 1

    def get(self, provider_message_id: str) -> InboundMessage | None:
        rows = self._query(
            "SELECT * FROM messaging_messages WHERE external_message_id = ?",
            (provider_message_id,),
        )
        return row_to_message(dict(rows[0])) if rows else None

    def count(self) -> int:
        return self._query("SELECT COUNT(*) FROM messaging_messages")[0][0]

    def attach_media(self, provider_message_id: str, reference: StorageReference) -> None:
        current = self.get(provider_message_id)
        if current is None:
            raise PersistenceError(f"Message {provider_message_id} not found")
        metadata = current.metadata.with_storage(reference)
        self._execute(
            """UPDATE messaging_messages SET media_url = ?, media_mime_type = ?, metadata = ?
               WHERE external_message_id = ?""",
            (
                reference.public_url,
                reference.content_type,
                json.dumps(metadata.as_json()),
                provider_message_id,
            ),
        )

    def mark_failed(self, provider_message_id: str, error: str) -> None:
        current = self.get(provider_message_id)
        if current is None:
            raise PersistenceError(f"Message {provider_message_id} not found")
        metadata = current.metadata.with_error(error)
        self._execute(
            "UPDATE messaging_messages SET metadata = ? WHERE external_message_id = ?",
            (json.dumps(metadata.as_json()), provider_message_id),
        )

    def mark_status(self, update: StatusUpdate) -> bool:
        column = STATUS_COLUMNS.get(update.status)
        if column is None:
            return False
        updated = self._execute(
            f"UPDATE messaging_messages SET {column} = ? WHERE external_message_id = ?",  # noqa: S608
            (update.timestamp, update.provider_message_id),
        )
        return updated > 0

    def pending_media(self, limit: int = 50) -> list[InboundMessage]:
        rows = self._query(
            """SELECT * FROM messaging_messages
               WHERE json_extract(metadata, '$.original_media_id') IS NOT NULL
                 AND json_extract(metadata, '$.storage_path') IS NULL
               ORDER BY sent_at LIMIT ?""",
            (limit,),
        )
        return [row_to_message(dict(r)) for r in rows]

    def add_channel(self, phone_number_id: str, organization_id: str) -> None:
        self._execute(
            """INSERT INTO messaging_channels (meta_phone_number_id, organization_id, channel_type)
               VALUES (?, ?, ?)
               ON CONFLICT(meta_phone_number_id) DO UPDATE SET
                 organization_id=excluded.organization_id""",
            (phone_number_id, organization_id, CHANNEL_TYPE),
        )

    def find_channel_organization(self, phone_number_id: str) -> str | None:
        rows = self._query(
            """SELECT organization_id FROM messaging_channels
               WHERE meta_phone_number_id = ? AND channel_type = ?""",
            (phone_number_id, CHANNEL_TYPE),
        )
        return rows[0]["organization_id"] if rows else None

    def close(self) -> None:
        self.conn.close()
