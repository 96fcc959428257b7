"""Full and delta sync of models from the backend.

This module provides:
- SyncProcessor: Pulls records page by page and merges them locally
- SyncPage / ModelSyncResult: Results of one page and one model

Full vs delta:
    A model is fully synced (lastSync omitted) when it was never synced,
    when its last full sync is older than its full_sync_interval, or when
    its sync filter changed. Otherwise only records changed since the
    last successful sync's startedAt are requested.

    Sync metadata is written only after every page of a model merged, so
    an interrupted sync is redone from the same checkpoint.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from syncstore.client.api import GraphQLResponseError
from syncstore.client.graphql import sync_field, sync_operation
from syncstore.client.state import ModelSyncMetadata
from syncstore.client.sync.errors import classify_error
from syncstore.client.sync.retry import BackoffFunction, jittered_backoff, retry
from syncstore.client.sync.types import (
    ErrorHandler,
    SyncError,
    SyncErrorInfo,
    error_class_for,
)
from syncstore.core.types import ProcessName

if TYPE_CHECKING:
    from syncstore.client.api import GraphQLTransport
    from syncstore.client.state import LocalStore
    from syncstore.client.sync.merger import ModelMerger
    from syncstore.core.config import DataStoreConfig
    from syncstore.core.schema import ModelDefinition, Schema

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SyncPage:
    """One page of a sync query."""

    items: list[dict[str, Any]]
    next_token: str | None = None
    started_at: int | None = None


@dataclass
class ModelSyncResult:
    """Outcome of syncing one model."""

    model_name: str
    is_full_sync: bool
    fetched: int = 0
    applied: int = 0
    pages: int = 0
    started_at: int | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)


class SyncProcessor:
    """Pulls model records from the backend into the local store."""

    def __init__(
        self,
        schema: Schema,
        store: LocalStore,
        transport: GraphQLTransport,
        merger: ModelMerger,
        config: DataStoreConfig,
        error_handler: ErrorHandler | None = None,
        sync_predicates: dict[str, dict[str, Any]] | None = None,
        backoff: BackoffFunction = jittered_backoff,
    ) -> None:
        """Initialize the sync processor.

        Args:
            schema: Models to sync.
            store: Local store holding records and sync metadata.
            transport: Executes the sync queries.
            merger: Applies fetched records.
            config: Page size, record limit and full-sync interval.
            error_handler: Receives per-record errors of partial pages.
            sync_predicates: Backend filter per model name.
            backoff: Delay policy between failed page requests.
        """
        self._schema = schema
        self._store = store
        self._transport = transport
        self._merger = merger
        self._config = config
        self._error_handler = error_handler
        self._sync_predicates = sync_predicates or {}
        self._backoff = backoff

    def _predicate_for(self, model: ModelDefinition) -> str | None:
        predicate = self._sync_predicates.get(model.name)
        return json.dumps(predicate, sort_keys=True) if predicate else None

    def get_metadata(self, model: ModelDefinition) -> ModelSyncMetadata:
        """Get the model's checkpoint, or a fresh one."""
        metadata = self._store.get_sync_metadata(model.name)
        if metadata is None:
            metadata = ModelSyncMetadata(
                model_name=model.name,
                full_sync_interval=int(self._config.full_sync_interval * 1000),
            )
        return metadata

    def is_full_sync(self, model: ModelDefinition, now: int | None = None) -> bool:
        """Check if the next sync of a model must be a full sync."""
        metadata = self.get_metadata(model)
        now = _now_ms() if now is None else now
        if metadata.last_sync is None or metadata.last_full_sync is None:
            return True
        if metadata.last_sync_predicate != self._predicate_for(model):
            return True
        return now - metadata.last_full_sync >= metadata.full_sync_interval

    def fetch_page(
        self,
        model: ModelDefinition,
        limit: int,
        next_token: str | None = None,
        last_sync: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> SyncPage:
        """Request one page, retrying with backoff.

        Raises:
            UnauthorizedError: If the backend refuses the session.
            SyncCancelledError: If stop_event was set while retrying.
            SyncError: Subclass matching the error once retries are exhausted.
        """
        operation = sync_operation(
            model,
            limit=limit,
            next_token=next_token,
            last_sync=last_sync,
            sync_filter=self._sync_predicates.get(model.name),
        )
        errors: list[dict[str, Any]] = []

        def request() -> dict[str, Any]:
            try:
                return self._transport.graphql(operation)
            except GraphQLResponseError as e:
                # Keep partial pages; per-record errors are reported
                if e.data and e.data.get(sync_field(model)):
                    errors.extend(e.errors)
                    return e.data
                raise

        try:
            data = retry(
                request,
                backoff=self._backoff,
                stop_event=stop_event,
                description=f"sync {model.name}",
            )
        except SyncError:
            raise
        except Exception as e:
            error_class = error_class_for(classify_error(e))
            raise error_class(f"Sync of {model.name} failed: {e}", cause=e) from e

        for error in errors:
            self._report(model, error)

        result = data.get(sync_field(model)) or {}
        return SyncPage(
            items=[item for item in result.get("items") or [] if item],
            next_token=result.get("nextToken"),
            started_at=result.get("startedAt"),
        )

    def sync_model(
        self,
        model: ModelDefinition,
        stop_event: threading.Event | None = None,
    ) -> ModelSyncResult:
        """Pull all pages of one model and merge them.

        Returns:
            Counts of fetched and applied records.
        """
        now = _now_ms()
        metadata = self.get_metadata(model)
        full = self.is_full_sync(model, now)
        last_sync = None if full else metadata.last_sync
        result = ModelSyncResult(model_name=model.name, is_full_sync=full)

        logger.info(
            "Starting %s sync of %s",
            "full" if full else "delta",
            model.name,
        )

        next_token: str | None = None
        while True:
            remaining = self._config.max_records_to_sync - result.fetched
            page = self.fetch_page(
                model,
                limit=min(self._config.sync_page_size, remaining),
                next_token=next_token,
                last_sync=last_sync,
                stop_event=stop_event,
            )
            if result.started_at is None:
                result.started_at = page.started_at
            result.pages += 1
            result.fetched += len(page.items)
            result.applied += self._merger.merge_page(model, page.items)

            next_token = page.next_token
            if not next_token or result.fetched >= self._config.max_records_to_sync:
                break

        metadata.last_sync = result.started_at if result.started_at is not None else now
        if full:
            metadata.last_full_sync = metadata.last_sync
        metadata.last_sync_predicate = self._predicate_for(model)
        self._store.set_sync_metadata(metadata)

        logger.info(
            "Synced %s: %d fetched, %d applied, %d pages",
            model.name,
            result.fetched,
            result.applied,
            result.pages,
        )
        return result

    def sync_all(
        self,
        stop_event: threading.Event | None = None,
        on_model_synced: Callable[[ModelSyncResult], None] | None = None,
    ) -> list[ModelSyncResult]:
        """Sync every syncable model in declaration order."""
        results = []
        for model in self._schema.syncable_models:
            result = self.sync_model(model, stop_event)
            results.append(result)
            if on_model_synced:
                on_model_synced(result)
        return results

    def _report(self, model: ModelDefinition, error: dict[str, Any]) -> None:
        if self._error_handler is None:
            logger.warning("Sync error on %s: %s", model.name, error.get("message"))
            return
        info = SyncErrorInfo(
            operation=None,
            process=ProcessName.SYNC,
            error_type=classify_error(error),
            model=model.name,
            message=str(error.get("message", "")),
            remote_model=error.get("data"),
            cause=error,
        )
        try:
            self._error_handler(info)
        except Exception:
            logger.exception("Error handler failed for sync of %s", model.name)
