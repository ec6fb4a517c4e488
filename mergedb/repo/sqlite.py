"""
SQLite storage adapter for the document repository.

Persists flushed document snapshots so a database can be reattached after a
process restart, and doubles as the key-value store that remembers the root
document id.

Table schema:
    documents:
        - document_id TEXT PRIMARY KEY
        - value_json TEXT
        - updated_at INTEGER (Unix ms)

    kv:
        - key TEXT PRIMARY KEY
        - value TEXT

Invariants:
    - One SQLite file per storage instance
    - Each save/remove is its own autocommitted statement
    - Stored values are the JSON of the latest flushed snapshot

How to change safely:
    - Schema changes must keep reading files written by older versions
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import DocumentId, StorageError

logger = logging.getLogger(__name__)


class SqliteStorage:
    """SQLite-backed StorageAdapter and KeyValueStore.

    Thread safety:
        A connection is opened per operation; operations are serialized
        with an asyncio lock.

    Example:
        >>> storage = SqliteStorage("/tmp/mergedb.sqlite3")
        >>> repo = InMemoryRepo(storage=storage)
    """

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the storage adapter.

        Args:
            path: SQLite database file
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._lock = asyncio.Lock()
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"SQLite storage failure at {self.path}: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                document_id TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)

    async def save(self, document_id: DocumentId, value: dict[str, Any]) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT INTO documents (document_id, value_json, updated_at) "
                    "VALUES (?, ?, ?) "
                    "ON CONFLICT(document_id) DO UPDATE SET "
                    "value_json = excluded.value_json, updated_at = excluded.updated_at",
                    (document_id, json.dumps(value), int(time.time() * 1000)),
                )

    async def load(self, document_id: DocumentId) -> dict[str, Any] | None:
        async with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value_json FROM documents WHERE document_id = ?",
                    (document_id,),
                ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def remove(self, document_id: DocumentId) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM documents WHERE document_id = ?", (document_id,))

    async def get(self, key: str) -> str | None:
        async with self._lock:
            with self._get_connection() as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
        logger.debug("Stored key", extra={"key": key})

    async def document_ids(self) -> list[DocumentId]:
        """All persisted document ids (inspection helper)."""
        async with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT document_id FROM documents ORDER BY document_id").fetchall()
        return [row[0] for row in rows]
