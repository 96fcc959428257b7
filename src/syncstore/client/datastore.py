"""Offline-first DataStore.

This module provides:
- DataStore: Local CRUD and observe API backed by the local store, with
  every write queued in the outbox and synced by the SyncEngine
- Subscription: Blocking iterator over store changes returned by observe()

Writes never wait for the network:

    save(new record)       -> stored, Create queued
    save(existing record)  -> stored, Update with the changed fields queued
    delete(record)         -> removed, Delete queued

Conditions are checked against the local copy first (ValidationError if
they fail) and sent with the mutation so the backend checks them again.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from syncstore.client.api import GraphQLClient
from syncstore.client.hub import Hub
from syncstore.client.state import LocalStore, StoreChange
from syncstore.client.sync.engine import SyncEngine
from syncstore.client.sync.outbox import Outbox
from syncstore.client.sync.retry import BackoffFunction, jittered_backoff
from syncstore.client.sync.types import MutationEvent
from syncstore.core.predicates import Predicate, matches, validate_predicate
from syncstore.core.schema import SYNC_FIELDS, ValidationError
from syncstore.core.types import OpType

if TYPE_CHECKING:
    from syncstore.client.api import GraphQLTransport, TokenProvider
    from syncstore.client.sync.domain.conflicts import ConflictHandler
    from syncstore.client.sync.types import ErrorHandler
    from syncstore.core.config import DataStoreConfig
    from syncstore.core.schema import ModelDefinition, Schema

logger = logging.getLogger(__name__)

SCHEMA_VERSION_KEY = "schema_version"

SortSpec = str | list[tuple[str, str]]


class Subscription:
    """Stream of store changes.

    Iterate to block on changes; close() ends the iteration.

    Usage:
        with datastore.observe("Post") as changes:
            for change in changes:
                print(change.operation, change.record)
    """

    _CLOSED = object()

    def __init__(
        self,
        store: LocalStore,
        model_name: str | None = None,
        predicate: Predicate | None = None,
    ) -> None:
        self._model_name = model_name
        self._predicate = predicate
        self._queue: queue.Queue[Any] = queue.Queue()
        self._closed = False
        self._remove = store.add_listener(self._on_change)

    def _on_change(self, change: StoreChange) -> None:
        if self._closed:
            return
        if self._model_name is not None and change.model_name != self._model_name:
            return
        if not matches(change.record, self._predicate):
            return
        self._queue.put(change)

    def get(self, timeout: float | None = None) -> StoreChange | None:
        """Wait for the next change.

        Returns:
            The change, or None on timeout or when closed.
        """
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        change: StoreChange = item
        return change

    def close(self) -> None:
        """Stop receiving changes and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._remove()
        self._queue.put(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[StoreChange]:
        while True:
            change = self.get()
            if change is None:
                return
            yield change

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class DataStore:
    """Local-first model storage synchronized with a GraphQL backend."""

    def __init__(
        self,
        schema: Schema,
        config: DataStoreConfig,
        transport: GraphQLTransport | None = None,
        get_tokens: TokenProvider | None = None,
        hub: Hub | None = None,
        error_handler: ErrorHandler | None = None,
        conflict_handler: ConflictHandler | None = None,
        sync_predicates: dict[str, dict[str, Any]] | None = None,
        store: LocalStore | None = None,
        outbox: Outbox | None = None,
        backoff: BackoffFunction = jittered_backoff,
    ) -> None:
        """Initialize the DataStore.

        Args:
            schema: Models managed by the store.
            config: Backend and sync settings.
            transport: GraphQL transport (default: GraphQLClient over httpx,
                with subscriptions and reachability monitoring).
            get_tokens: Token provider for token-based auth modes.
            hub: Hub receiving lifecycle events.
            error_handler: Receives unrecoverable sync errors.
            conflict_handler: Resolves version conflicts.
            sync_predicates: Backend filter per model name.
            store: Local store (default: from config.store_path).
            outbox: Outbox (default: from config.outbox_path).
            backoff: Retry delay policy.
        """
        self._schema = schema
        self._config = config
        self._hub = hub if hub is not None else Hub()
        self._store = store if store is not None else LocalStore(config.store_path)
        self._outbox = outbox if outbox is not None else Outbox(config.outbox_path)
        self._write_lock = threading.RLock()

        self._client: GraphQLClient | None = None
        if transport is None:
            self._client = GraphQLClient(config, get_tokens)
            transport = self._client

        self._engine = SyncEngine(
            schema,
            self._store,
            self._outbox,
            transport,
            config,
            dispatch=self._hub.dispatch,
            error_handler=error_handler,
            conflict_handler=conflict_handler,
            sync_predicates=sync_predicates,
            backoff=backoff,
            auth_headers=self._client.auth_headers if self._client else None,
            reachability_probe=self._client.health_check if self._client else None,
        )

        self._check_schema_version()

    @property
    def hub(self) -> Hub:
        return self._hub

    @property
    def engine(self) -> SyncEngine:
        return self._engine

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def outbox(self) -> Outbox:
        return self._outbox

    def _check_schema_version(self) -> None:
        """Drop local data written under a different schema version."""
        stored = self._store.get_state(SCHEMA_VERSION_KEY)
        if stored is not None and stored != self._schema.version:
            logger.warning(
                "Schema version changed (%s -> %s), clearing local data",
                stored,
                self._schema.version,
            )
            self._store.clear()
            self._outbox.clear()
        self._store.set_state(SCHEMA_VERSION_KEY, self._schema.version)

    # === Lifecycle ===

    def start(self) -> None:
        """Start syncing with the backend."""
        self._engine.start()

    def stop(self) -> None:
        """Stop syncing. Local data and queued mutations are kept."""
        self._engine.stop()

    def clear(self) -> None:
        """Stop syncing and delete all local data and queued mutations."""
        self._engine.stop()
        self._outbox.clear()
        self._store.clear()
        self._store.set_state(SCHEMA_VERSION_KEY, self._schema.version)
        logger.info("DataStore cleared")

    def close(self) -> None:
        """Stop syncing and release resources."""
        self._engine.stop()
        self._outbox.close()
        self._store.close()
        if self._client is not None:
            self._client.close()

    def __enter__(self) -> DataStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # === Writes ===

    def _check_condition(
        self,
        model: ModelDefinition,
        existing: dict[str, Any] | None,
        condition: dict[str, Any] | None,
    ) -> None:
        if not condition:
            return
        validate_predicate(condition, set(model.fields))
        if existing is not None and not matches(existing, condition):
            raise ValidationError(f"Conditional write on {model.name} failed")

    def _enqueue(
        self,
        model: ModelDefinition,
        key: str,
        operation: OpType,
        payload: dict[str, Any],
        condition: dict[str, Any] | None,
    ) -> MutationEvent | None:
        if not model.syncable:
            return None
        return self._outbox.enqueue(
            MutationEvent.create(model.name, key, operation, payload, condition)
        )

    def save(
        self,
        model_name: str,
        record: dict[str, Any],
        condition: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create or update a record.

        Args:
            model_name: Model of the record.
            record: Field values; a missing "id" is generated.
            condition: Only write if the stored record matches it.

        Returns:
            The record as stored.

        Raises:
            ValidationError: If the record or condition is invalid, or the
                condition does not hold locally.
        """
        model = self._schema.get(model_name)
        record = model.ensure_identifier(record)
        model.validate(record)
        key = model.key(record)

        with self._write_lock:
            existing = self._store.get(model.name, key)
            self._check_condition(model, existing, condition)

            if existing is None:
                saved = {k: v for k, v in record.items() if k not in SYNC_FIELDS}
                self._store.save(model.name, key, saved)
                event = self._enqueue(model, key, OpType.CREATE, saved, condition)
            else:
                saved = {**existing, **record}
                for name in SYNC_FIELDS:
                    if name in existing:
                        saved[name] = existing[name]
                changed = {
                    name: value
                    for name, value in saved.items()
                    if name not in SYNC_FIELDS and existing.get(name) != value
                }
                if not changed:
                    logger.debug("Save of %s %s changed nothing", model.name, key)
                    return saved

                self._store.save(model.name, key, saved)
                payload = {name: saved[name] for name in model.primary_key}
                payload.update(changed)
                payload["_version"] = existing.get("_version")
                event = self._enqueue(model, key, OpType.UPDATE, payload, condition)

        if event is not None:
            self._engine.notify_enqueued(event)
        return saved

    def delete(
        self,
        model_name: str,
        identifier: Any,
        condition: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Delete a record.

        Args:
            model_name: Model of the record.
            identifier: The record, its id, or its key values in order.
            condition: Only delete if the stored record matches it.

        Returns:
            The deleted record, or None if it did not exist.

        Raises:
            ValidationError: If the condition is invalid or does not hold.
        """
        model = self._schema.get(model_name)
        key = model.key_from_identifier(identifier)

        with self._write_lock:
            existing = self._store.get(model.name, key)
            if existing is None:
                return None
            self._check_condition(model, existing, condition)
            self._store.delete(model.name, key)
            event = self._enqueue(model, key, OpType.DELETE, existing, condition)

        if event is not None:
            self._engine.notify_enqueued(event)
        return existing

    def delete_where(self, model_name: str, predicate: Predicate) -> list[dict[str, Any]]:
        """Delete every record matching a predicate.

        Returns:
            The deleted records.
        """
        model = self._schema.get(model_name)
        deleted = []
        for record in self._store.query(model.name, predicate):
            removed = self.delete(model.name, model.identifier(record))
            if removed is not None:
                deleted.append(removed)
        return deleted

    # === Reads ===

    def query(
        self,
        model_name: str,
        predicate: Predicate | None = None,
        sort: SortSpec | None = None,
        limit: int | None = None,
        page: int = 0,
    ) -> list[dict[str, Any]]:
        """List records of a model.

        Args:
            model_name: Model to list.
            predicate: Condition dict or callable.
            sort: Field name, or list of (field, "ASC"|"DESC").
            limit: Page size (None = everything).
            page: Zero-based page number when limit is set.
        """
        model = self._schema.get(model_name)
        records = self._store.query(model.name, predicate)

        if sort:
            records = sort_records(records, sort)

        if limit is not None:
            start = page * limit
            records = records[start:start + limit]
        return records

    def query_one(self, model_name: str, identifier: Any) -> dict[str, Any] | None:
        """Get a record by identifier."""
        model = self._schema.get(model_name)
        return self._store.get(model.name, model.key_from_identifier(identifier))

    def observe(
        self,
        model_name: str | None = None,
        predicate: Predicate | None = None,
    ) -> Subscription:
        """Stream local and remote changes, optionally for one model."""
        if model_name is not None:
            self._schema.get(model_name)
        return Subscription(self._store, model_name, predicate)


def sort_records(records: list[dict[str, Any]], sort: SortSpec) -> list[dict[str, Any]]:
    """Sort records by one or more fields; missing values sort first."""
    if isinstance(sort, str):
        sort = [(sort, "ASC")]

    result = list(records)
    # Stable sorts applied from the least significant field
    for name, direction in reversed(sort):
        descending = direction.upper() == "DESC"
        result.sort(
            key=lambda r, n=name: (r.get(n) is not None, r.get(n) if r.get(n) is not None else 0),
            reverse=descending,
        )
    return result
