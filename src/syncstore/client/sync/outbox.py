"""Mutation outbox for pending local changes.

This module provides:
- Outbox: Thread-safe durable FIFO of MutationEvents with per-record
  merging and an exclusive-access section for the mutation processor

Ordering:
    Events are ordered by seq_id, a counter assigned on enqueue. Merged
    events keep the seq_id of the event they were merged into, so a
    record's position in the queue is the position of its first pending
    change.

Merging (per model_name + model_id, ignoring the in-flight event):
    | Pending | New    | Result                                  |
    |---------|--------|-----------------------------------------|
    | CREATE  | UPDATE | one CREATE with merged fields           |
    | UPDATE  | UPDATE | one UPDATE with merged fields           |
    | any     | DELETE | pending events removed, DELETE appended |
    | none    | any    | appended                                |

    The in-flight event (claimed by the mutation processor) is never
    merged into; a change arriving while it is sent queues behind it.

Persistence (SQLite):
    With a persistence path every put/remove commits immediately, and a
    restart reloads pending events in seq_id order. The in-flight claim is
    memory-only: an event that was being sent when the process died is
    sent again from the top.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from syncstore.client.sync.types import EmptyQueueError, MutationEvent
from syncstore.core.schema import SYNC_FIELDS
from syncstore.core.types import OpType

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

T = TypeVar("T")


def merge_payloads(previous: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Merge an update payload into a pending payload.

    User fields from the newer payload win; sync metadata fields
    (_version, _lastChangedAt, _deleted) are kept from the pending one.
    """
    merged = dict(previous)
    for name, value in current.items():
        if name in SYNC_FIELDS and name in previous:
            continue
        merged[name] = value
    return merged


class Outbox:
    """Thread-safe durable FIFO of pending mutation events.

    Attributes:
        persistence_path: Optional SQLite path for persistence
    """

    def __init__(self, persistence_path: Path | None = None) -> None:
        """Initialize the outbox.

        Args:
            persistence_path: Optional path to SQLite DB for persistence
        """
        self._lock = threading.RLock()
        self._events: dict[int, MutationEvent] = {}  # seq_id -> event
        self._next_seq = 1
        self._in_flight: int | None = None
        self._persistence_path = persistence_path
        self._db: sqlite3.Connection | None = None
        self._closed = False

        if persistence_path:
            self._init_persistence()
            self._load_from_persistence()

    def _init_persistence(self) -> None:
        """Initialize SQLite database for persistence."""
        if not self._persistence_path:
            return

        self._persistence_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(
            str(self._persistence_path),
            check_same_thread=False,
        )
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("""
            CREATE TABLE IF NOT EXISTS outbox (
                seq_id INTEGER PRIMARY KEY,
                model_name TEXT NOT NULL,
                model_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                data TEXT NOT NULL,
                condition TEXT NOT NULL,
                version INTEGER,
                created_at REAL NOT NULL
            )
        """)
        self._db.commit()
        logger.debug("Initialized outbox persistence at %s", self._persistence_path)

    def _load_from_persistence(self) -> None:
        """Load events from SQLite on startup."""
        if not self._db:
            return

        cursor = self._db.execute(
            "SELECT seq_id, model_name, model_id, operation, data, condition, "
            "version, created_at FROM outbox ORDER BY seq_id"
        )
        count = 0
        for row in cursor:
            seq_id, model_name, model_id, operation, data, condition, version, created_at = row
            self._events[seq_id] = MutationEvent(
                model_name=model_name,
                model_id=model_id,
                operation=OpType(operation),
                data=data,
                condition=condition,
                seq_id=seq_id,
                version=version,
                created_at=created_at,
            )
            self._next_seq = max(self._next_seq, seq_id + 1)
            count += 1

        if count > 0:
            logger.info("Loaded %d pending mutations from persistence", count)

    def _persist_event(self, event: MutationEvent) -> None:
        """Save an event to SQLite."""
        if not self._db:
            return

        self._db.execute(
            """
            INSERT OR REPLACE INTO outbox
            (seq_id, model_name, model_id, operation, data, condition, version, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.seq_id,
                event.model_name,
                event.model_id,
                event.operation.value,
                event.data,
                event.condition,
                event.version,
                event.created_at,
            ),
        )
        self._db.commit()

    def _remove_from_persistence(self, seq_id: int) -> None:
        """Remove an event from SQLite."""
        if not self._db:
            return

        self._db.execute("DELETE FROM outbox WHERE seq_id = ?", (seq_id,))
        self._db.commit()

    def _head_seq(self) -> int | None:
        if not self._events:
            return None
        return min(self._events)

    def _pending_for(self, model_name: str, model_id: str) -> list[MutationEvent]:
        """Events for a record that may still be merged (not in flight)."""
        return [
            self._events[seq]
            for seq in sorted(self._events)
            if seq != self._in_flight
            and self._events[seq].model_name == model_name
            and self._events[seq].model_id == model_id
        ]

    def _append(self, event: MutationEvent) -> MutationEvent:
        event.seq_id = self._next_seq
        self._next_seq += 1
        self._events[event.seq_id] = event
        self._persist_event(event)
        return event

    def _remove(self, seq_id: int) -> None:
        self._events.pop(seq_id, None)
        self._remove_from_persistence(seq_id)

    def enqueue(self, event: MutationEvent) -> MutationEvent:
        """Add an event, merging it with pending events for the same record.

        Args:
            event: The event to add

        Returns:
            The event as stored (the merged event when a merge happened)

        Raises:
            RuntimeError: If outbox is closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Outbox is closed")

            pending = self._pending_for(event.model_name, event.model_id)

            if event.operation is OpType.DELETE:
                for old in pending:
                    logger.debug("Delete supersedes pending %r", old)
                    self._remove(old.seq_id)  # type: ignore[arg-type]
                stored = self._append(event)

            elif (
                event.operation is OpType.UPDATE
                and pending
                and pending[-1].operation in (OpType.CREATE, OpType.UPDATE)
            ):
                target = pending[-1]
                target.data = MutationEvent.create(
                    event.model_name,
                    event.model_id,
                    target.operation,
                    merge_payloads(target.payload, event.payload),
                ).data
                if target.operation is OpType.UPDATE:
                    target.condition = event.condition
                self._persist_event(target)
                logger.debug("Merged update into pending %r", target)
                stored = target

            else:
                stored = self._append(event)

            logger.debug("Queued mutation: %r (outbox size: %d)", stored, len(self._events))
            return stored

    def peek(self) -> MutationEvent | None:
        """Look at the head event without removing it.

        Returns:
            The oldest event, or None if outbox is empty
        """
        with self._lock:
            head = self._head_seq()
            return self._events[head] if head is not None else None

    def claim(self) -> MutationEvent | None:
        """Mark the head event as in flight and return it.

        Returns:
            The head event, or None if outbox is empty
        """
        with self._lock:
            head = self._head_seq()
            if head is None:
                return None
            self._in_flight = head
            return self._events[head]

    def release(self) -> None:
        """Clear the in-flight mark without removing the event."""
        with self._lock:
            self._in_flight = None

    @property
    def in_flight(self) -> MutationEvent | None:
        """The event currently claimed for sending, if any."""
        with self._lock:
            if self._in_flight is None:
                return None
            return self._events.get(self._in_flight)

    def dequeue(self) -> MutationEvent:
        """Remove the head event.

        Returns:
            The removed event

        Raises:
            EmptyQueueError: If outbox is empty
        """
        with self._lock:
            head = self._head_seq()
            if head is None:
                raise EmptyQueueError("Outbox is empty")
            event = self._events[head]
            self._remove(head)
            self._in_flight = None
            logger.debug("Dequeued mutation: %r (outbox size: %d)", event, len(self._events))
            return event

    def run_exclusive(self, fn: Callable[[Outbox], T]) -> T:
        """Run fn with the outbox lock held.

        Args:
            fn: Called with this outbox

        Returns:
            Whatever fn returns
        """
        with self._lock:
            return fn(self)

    def get_for_model(self, model_name: str, model_id: str) -> list[MutationEvent]:
        """All events (including in flight) for a record, in order."""
        with self._lock:
            return [
                self._events[seq]
                for seq in sorted(self._events)
                if self._events[seq].model_name == model_name
                and self._events[seq].model_id == model_id
            ]

    def has_pending(self, model_name: str, model_id: str) -> bool:
        """Check if any event is queued for a record."""
        return bool(self.get_for_model(model_name, model_id))

    def discard_pending(self, model_name: str, model_id: str) -> int:
        """Drop queued events for a record, leaving the in-flight one.

        Returns:
            Number of events removed
        """
        with self._lock:
            pending = self._pending_for(model_name, model_id)
            for event in pending:
                self._remove(event.seq_id)  # type: ignore[arg-type]
            if pending:
                logger.info(
                    "Discarded %d queued mutations of %s#%s",
                    len(pending),
                    model_name,
                    model_id,
                )
            return len(pending)

    def sync_versions_on_dequeue(
        self,
        model_name: str,
        model_id: str,
        record: dict[str, Any],
    ) -> int:
        """Carry the backend's version into events still queued for a record.

        Called after a mutation for the record succeeded, so the next
        mutation is sent against the version the backend now holds.

        Returns:
            Number of events updated
        """
        version = record.get("_version")
        if version is None:
            return 0

        with self._lock:
            updated = 0
            for event in self.get_for_model(model_name, model_id):
                payload = event.payload
                payload["_version"] = version
                if record.get("_lastChangedAt") is not None:
                    payload["_lastChangedAt"] = record["_lastChangedAt"]
                event.data = MutationEvent.create(
                    model_name, model_id, event.operation, payload
                ).data
                event.version = version
                self._persist_event(event)
                updated += 1
            if updated:
                logger.debug(
                    "Updated %d queued mutations of %s#%s to version %s",
                    updated,
                    model_name,
                    model_id,
                    version,
                )
            return updated

    def clear(self) -> int:
        """Remove all events from the outbox.

        Returns:
            Number of events removed
        """
        with self._lock:
            count = len(self._events)
            self._events.clear()
            self._in_flight = None
            if self._db:
                self._db.execute("DELETE FROM outbox")
                self._db.commit()
            logger.info("Cleared %d mutations from outbox", count)
            return count

    def close(self) -> None:
        """Close the outbox."""
        with self._lock:
            self._closed = True
            if self._db:
                self._db.close()
                self._db = None
            logger.debug("Outbox closed")

    def __len__(self) -> int:
        """Get number of pending events."""
        with self._lock:
            return len(self._events)

    def __iter__(self) -> Iterator[MutationEvent]:
        """Iterate over events in FIFO order (does not remove them)."""
        with self._lock:
            return iter([self._events[seq] for seq in sorted(self._events)])

    def __bool__(self) -> bool:
        """Check if outbox has events."""
        with self._lock:
            return bool(self._events)

    @property
    def is_closed(self) -> bool:
        """Check if outbox is closed."""
        return self._closed

    def stats(self) -> dict[str, int]:
        """Get outbox statistics.

        Returns:
            Dictionary with event counts by operation
        """
        with self._lock:
            stats: dict[str, int] = {
                "total": len(self._events),
                "create": 0,
                "update": 0,
                "delete": 0,
            }
            for event in self._events.values():
                stats[event.operation.graphql_prefix] += 1
            return stats
