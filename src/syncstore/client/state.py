"""Local record storage for the DataStore.

This module provides:
- LocalStore: SQLite-based durable storage of model records
- ModelSyncMetadata: Per-model sync checkpoint
- StoreChange: Change notification emitted to store listeners

Architecture:
    One row per model instance keyed by (model_name, key), where key is
    the identifier built by ModelDefinition.key(). Records are stored as
    JSON. Writes are single-row and autocommitted; there is no
    cross-record transaction.

    Listeners registered with add_listener() are called after every
    write, outside the store lock, so observers can read back safely.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from syncstore.core.predicates import Predicate, matches
from syncstore.core.types import OpType

logger = logging.getLogger(__name__)


@dataclass
class ModelSyncMetadata:
    """Sync checkpoint for one model.

    Attributes:
        model_name: Model the checkpoint belongs to.
        last_sync: Server startedAt of the last successful sync (ms).
        last_full_sync: When the last full sync started (ms).
        full_sync_interval: Milliseconds between full syncs.
        last_sync_predicate: Serialized sync filter used last time.
    """

    model_name: str
    last_sync: int | None = None
    last_full_sync: int | None = None
    full_sync_interval: int = 24 * 60 * 60 * 1000
    last_sync_predicate: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ModelSyncMetadata:
        """Create ModelSyncMetadata from database row."""
        return cls(
            model_name=row["model_name"],
            last_sync=row["last_sync"],
            last_full_sync=row["last_full_sync"],
            full_sync_interval=row["full_sync_interval"],
            last_sync_predicate=row["last_sync_predicate"],
        )


@dataclass
class StoreChange:
    """A write applied to the local store."""

    model_name: str
    operation: OpType
    record: dict[str, Any]


StoreListener = Callable[[StoreChange], None]


class LocalStore:
    """SQLite-based local storage of model records and sync metadata."""

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize local store database.

        Args:
            db_path: Path to SQLite database file (None = in-memory).
        """
        self._db_path = Path(db_path) if db_path is not None else None
        if self._db_path is not None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()
        self._listeners: list[StoreListener] = []

        self._conn = sqlite3.connect(
            str(self._db_path) if self._db_path is not None else ":memory:",
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        if self._db_path is not None:
            self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS records (
                model_name TEXT NOT NULL,
                key TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (model_name, key)
            );

            CREATE TABLE IF NOT EXISTS sync_metadata (
                model_name TEXT PRIMARY KEY,
                last_sync INTEGER,
                last_full_sync INTEGER,
                full_sync_interval INTEGER NOT NULL,
                last_sync_predicate TEXT
            );

            -- Key-value store state (schema version, etc.)
            CREATE TABLE IF NOT EXISTS store_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Listeners ===

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        """Register a callback for every write.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self, change: StoreChange) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed for %s", change.model_name)

    # === Record operations ===

    def get(self, model_name: str, key: str) -> dict[str, Any] | None:
        """Get a record by key.

        Returns:
            The record if found, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM records WHERE model_name = ? AND key = ?",
                (model_name, key),
            ).fetchone()
        if row is None:
            return None
        record: dict[str, Any] = json.loads(row["data"])
        return record

    def save(self, model_name: str, key: str, record: dict[str, Any]) -> OpType:
        """Insert or replace a record.

        Returns:
            OpType.CREATE if the key was new, OpType.UPDATE otherwise.
        """
        with self._lock:
            existed = self._conn.execute(
                "SELECT 1 FROM records WHERE model_name = ? AND key = ?",
                (model_name, key),
            ).fetchone() is not None
            self._conn.execute(
                "INSERT OR REPLACE INTO records (model_name, key, data) VALUES (?, ?, ?)",
                (model_name, key, json.dumps(record)),
            )
        operation = OpType.UPDATE if existed else OpType.CREATE
        logger.debug("Stored %s %s (%s)", model_name, key, operation.value)
        self._notify(StoreChange(model_name, operation, dict(record)))
        return operation

    def delete(self, model_name: str, key: str) -> dict[str, Any] | None:
        """Remove a record.

        Returns:
            The removed record, or None if it did not exist.
        """
        with self._lock:
            record = self.get(model_name, key)
            if record is None:
                return None
            self._conn.execute(
                "DELETE FROM records WHERE model_name = ? AND key = ?",
                (model_name, key),
            )
        logger.debug("Removed %s %s", model_name, key)
        self._notify(StoreChange(model_name, OpType.DELETE, record))
        return record

    def query(
        self,
        model_name: str,
        predicate: Predicate | None = None,
    ) -> list[dict[str, Any]]:
        """List records of a model, ordered by key, filtered by predicate."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT data FROM records WHERE model_name = ? ORDER BY key",
                (model_name,),
            ).fetchall()
        records = [json.loads(row["data"]) for row in rows]
        return [r for r in records if matches(r, predicate)]

    def query_range(
        self,
        model_name: str,
        start: str | None = None,
        end: str | None = None,
    ) -> list[dict[str, Any]]:
        """List records whose key is in [start, end), ordered by key."""
        sql = "SELECT data FROM records WHERE model_name = ?"
        params: list[Any] = [model_name]
        if start is not None:
            sql += " AND key >= ?"
            params.append(start)
        if end is not None:
            sql += " AND key < ?"
            params.append(end)
        sql += " ORDER BY key"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def keys(self, model_name: str) -> list[str]:
        """List record keys of a model in order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM records WHERE model_name = ? ORDER BY key",
                (model_name,),
            ).fetchall()
        return [row["key"] for row in rows]

    def count(self, model_name: str) -> int:
        """Count records of a model."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM records WHERE model_name = ?",
                (model_name,),
            ).fetchone()
        return int(row["n"])

    # === Sync metadata ===

    def get_sync_metadata(self, model_name: str) -> ModelSyncMetadata | None:
        """Get the sync checkpoint of a model."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_metadata WHERE model_name = ?",
                (model_name,),
            ).fetchone()
        if row is None:
            return None
        return ModelSyncMetadata.from_row(row)

    def set_sync_metadata(self, metadata: ModelSyncMetadata) -> None:
        """Store the sync checkpoint of a model (upsert)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO sync_metadata (
                    model_name, last_sync, last_full_sync,
                    full_sync_interval, last_sync_predicate
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    metadata.model_name,
                    metadata.last_sync,
                    metadata.last_full_sync,
                    metadata.full_sync_interval,
                    metadata.last_sync_predicate,
                ),
            )

    # === Store state ===

    def get_state(self, key: str) -> str | None:
        """Get a store state value."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM store_state WHERE key = ?",
                (key,),
            ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        """Set a store state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO store_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def clear(self) -> None:
        """Remove all records, sync metadata and state."""
        with self._lock:
            self._conn.executescript("""
                DELETE FROM records;
                DELETE FROM sync_metadata;
                DELETE FROM store_state;
            """)
        logger.info("Local store cleared")
