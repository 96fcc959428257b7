"""Sync engine coordinating the local store with the backend.

This module provides:
- SyncEngine: Wires the mutation processor, sync processor, subscription
  listener, reachability monitor and periodic scheduler together

The engine is the "brain" of sync:
1. Watches reachability and drives everything from online/offline
   transitions
2. On going online: starts subscriptions, runs a full or delta sync of
   every model, then drains the outbox
3. While online: drains the outbox whenever a mutation is enqueued
4. Merges pushed records, buffering them while a sync is running

Hub events (channel "datastore"):
    | Event                     | Data                                   |
    |---------------------------|----------------------------------------|
    | networkStatus             | {active}                               |
    | subscriptionsEstablished  | None                                   |
    | subscriptionsDisconnected | None                                   |
    | syncQueriesStarted        | {models}                               |
    | modelSynced               | {model, isFullSync, isDeltaSync, ...}  |
    | syncQueriesReady          | None                                   |
    | ready                     | None                                   |
    | outboxMutationEnqueued    | {model, element}                       |
    | outboxMutationProcessed   | {model, element}                       |
    | outboxStatus              | {isEmpty}                              |
    | mutationError             | {errorType, model, ...} (processor)    |
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from syncstore.client.hub import DATASTORE_CHANNEL
from syncstore.client.sync.errors import classify_error
from syncstore.client.sync.merger import ModelMerger
from syncstore.client.sync.mutation import MutationProcessor
from syncstore.client.sync.reachability import NetworkMonitor
from syncstore.client.sync.remote_listener import SubscriptionListener
from syncstore.client.sync.retry import BackoffFunction, jittered_backoff
from syncstore.client.sync.scheduler import SyncScheduler
from syncstore.client.sync.sync_processor import ModelSyncResult, SyncProcessor
from syncstore.client.sync.types import (
    Dispatch,
    EngineStats,
    ErrorHandler,
    MutationEvent,
    SyncCancelledError,
    SyncError,
    SyncErrorInfo,
)
from syncstore.core.types import OpType, ProcessName, SyncState

if TYPE_CHECKING:
    from syncstore.client.api import GraphQLTransport
    from syncstore.client.state import LocalStore
    from syncstore.client.sync.domain.conflicts import ConflictHandler
    from syncstore.client.sync.outbox import Outbox
    from syncstore.core.config import DataStoreConfig
    from syncstore.core.schema import Schema

logger = logging.getLogger(__name__)


class SyncEngine:
    """Central orchestrator for sync operations.

    Usage:
        engine = SyncEngine(schema, store, outbox, client, config,
                            dispatch=hub.dispatch,
                            auth_headers=client.auth_headers,
                            reachability_probe=client.health_check)
        engine.start()

        # After each local write:
        engine.notify_enqueued(event)

        engine.stop()
    """

    def __init__(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        transport: GraphQLTransport,
        config: DataStoreConfig,
        dispatch: Dispatch | None = None,
        error_handler: ErrorHandler | None = None,
        conflict_handler: ConflictHandler | None = None,
        sync_predicates: dict[str, dict[str, Any]] | None = None,
        backoff: BackoffFunction = jittered_backoff,
        auth_headers: Callable[[], dict[str, str]] | None = None,
        reachability_probe: Callable[[], bool] | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            schema: Models to sync.
            store: Local record store.
            outbox: Pending mutation queue.
            transport: Executes GraphQL operations.
            config: Sync and connection settings.
            dispatch: Hub dispatch for lifecycle events.
            error_handler: Receives unrecoverable errors.
            conflict_handler: Resolves version conflicts.
            sync_predicates: Backend filter per model name.
            backoff: Delay policy shared by both processors.
            auth_headers: Auth headers for subscriptions (None = no
                subscriptions).
            reachability_probe: Returns True when the backend is
                reachable (None = always online).
        """
        self._schema = schema
        self._store = store
        self._outbox = outbox
        self._config = config
        self._dispatch = dispatch
        self._error_handler = error_handler

        self._merger = ModelMerger(store, outbox, conflict_handler)
        self._mutation_processor = MutationProcessor(
            schema,
            outbox,
            transport,
            self._merger,
            dispatch=dispatch,
            error_handler=error_handler,
            conflict_handler=conflict_handler,
            backoff=backoff,
            auth_mode=config.auth_mode,
            on_processed=self._on_mutation_processed,
        )
        self._sync_processor = SyncProcessor(
            schema,
            store,
            transport,
            self._merger,
            config,
            error_handler=error_handler,
            sync_predicates=sync_predicates,
            backoff=backoff,
        )

        self._listener: SubscriptionListener | None = None
        if auth_headers is not None:
            self._listener = SubscriptionListener(
                config,
                schema,
                auth_headers,
                on_record=self.handle_remote_record,
                on_established=self._on_subscriptions_established,
                on_disconnected=self._on_subscriptions_disconnected,
                on_error=self._on_subscription_error,
            )

        self._monitor: NetworkMonitor | None = None
        if reachability_probe is not None:
            self._monitor = NetworkMonitor(
                reachability_probe,
                on_change=self.set_network_status,
                check_interval=config.network_check_interval,
            )

        self._scheduler = SyncScheduler(self._scheduled_sync, config.sync_interval)

        # State
        self._state = SyncState.STOPPED
        self._lock = threading.RLock()
        self._online = False
        self._ready = False
        self._syncing = False
        self._sync_stop = threading.Event()
        self._buffer: list[tuple[str, OpType, dict[str, Any]]] = []
        self._workers: list[threading.Thread] = []
        self._stats = EngineStats()

    @property
    def state(self) -> SyncState:
        """Get current engine state."""
        return self._state

    @property
    def stats(self) -> EngineStats:
        """Get engine statistics."""
        return self._stats

    @property
    def online(self) -> bool:
        """Check if the backend is considered reachable."""
        return self._online

    @property
    def running(self) -> bool:
        """Check if the engine was started and not stopped."""
        return self._state is not SyncState.STOPPED

    @property
    def mutation_processor(self) -> MutationProcessor:
        return self._mutation_processor

    @property
    def sync_processor(self) -> SyncProcessor:
        return self._sync_processor

    def _emit(self, event: str, data: Any = None) -> None:
        if self._dispatch is None:
            return
        try:
            self._dispatch(DATASTORE_CHANNEL, {"event": event, "data": data})
        except Exception:
            logger.exception("Dispatch of %s failed", event)

    def _start_worker(self, target: Callable[[], None], name: str) -> None:
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            worker = threading.Thread(target=target, name=name, daemon=True)
            self._workers.append(worker)
        worker.start()

    # === Lifecycle ===

    def start(self) -> None:
        """Start sync: reachability, then subscriptions, sync and mutations."""
        with self._lock:
            if self._state is not SyncState.STOPPED:
                logger.warning("SyncEngine already running")
                return
            self._state = SyncState.STARTING
            self._ready = False
            self._sync_stop.clear()

        logger.info("SyncEngine starting")
        self._scheduler.start()
        if self._monitor is not None:
            self._monitor.start()
        else:
            self.set_network_status(True)

    def stop(self) -> None:
        """Stop every background activity. Queued mutations are kept."""
        with self._lock:
            if self._state is SyncState.STOPPED:
                return
            self._state = SyncState.STOPPED
            self._online = False

        self._sync_stop.set()
        self._mutation_processor.stop()
        self._scheduler.stop()
        if self._monitor is not None:
            self._monitor.stop()
        if self._listener is not None:
            self._listener.stop()

        for worker in list(self._workers):
            worker.join(timeout=5.0)
        self._workers.clear()
        logger.info("SyncEngine stopped")

    def set_network_status(self, online: bool) -> None:
        """React to a reachability transition.

        Going online starts subscriptions, syncs and drains the outbox;
        going offline pauses mutation sending and syncing.
        """
        with self._lock:
            if not self.running or online == self._online:
                return
            self._online = online
            self._state = SyncState.SYNCING if online else SyncState.OFFLINE

        self._emit("networkStatus", {"active": online})

        if online:
            self._sync_stop.clear()
            self._start_worker(self._go_online, "SyncEngine-online")
        else:
            logger.info("Offline: pausing sync")
            self._sync_stop.set()
            self._mutation_processor.stop()
            if self._listener is not None:
                self._listener.stop()

    def _go_online(self) -> None:
        if self._listener is not None:
            self._listener.start()

        try:
            self.sync()
        except SyncCancelledError:
            logger.info("Sync cancelled")
            return
        except SyncError as e:
            self._stats.errors += 1
            logger.error("Sync failed: %s", e)
            self._report(ProcessName.SYNC, e)

        with self._lock:
            if not self._online or not self.running:
                return
            first_ready = not self._ready
            self._ready = True
            self._state = SyncState.READY
        if first_ready:
            self._emit("ready")

        self.process_mutations()

    # === Sync ===

    def sync(self) -> list[ModelSyncResult]:
        """Run a full or delta sync of every model (blocking).

        Records pushed by subscriptions meanwhile are buffered and merged
        once the sync finished.

        Raises:
            SyncError: If a model could not be synced.
        """
        with self._lock:
            if self._syncing:
                logger.debug("Sync already running")
                return []
            self._syncing = True

        self._emit(
            "syncQueriesStarted",
            {"models": [m.name for m in self._schema.syncable_models]},
        )
        try:
            results = self._sync_processor.sync_all(
                stop_event=self._sync_stop,
                on_model_synced=self._on_model_synced,
            )
            self._stats.syncs_completed += 1
            self._emit("syncQueriesReady")
            return results
        finally:
            with self._lock:
                self._syncing = False
                buffered, self._buffer = self._buffer, []
            for model_name, operation, record in buffered:
                self._apply_remote(model_name, operation, record)

    def _scheduled_sync(self) -> None:
        if not self._online:
            return
        try:
            self.sync()
        except SyncCancelledError:
            pass
        except SyncError as e:
            self._stats.errors += 1
            self._report(ProcessName.SYNC, e)

    def _on_model_synced(self, result: ModelSyncResult) -> None:
        self._stats.records_merged += result.applied
        self._emit(
            "modelSynced",
            {
                "model": result.model_name,
                "isFullSync": result.is_full_sync,
                "isDeltaSync": not result.is_full_sync,
                "counts": {"fetched": result.fetched, "applied": result.applied},
            },
        )

    # === Remote records ===

    def handle_remote_record(
        self,
        model_name: str,
        operation: OpType,
        record: dict[str, Any],
    ) -> None:
        """Merge a record pushed by a subscription."""
        self._stats.subscription_messages += 1
        with self._lock:
            if self._syncing:
                self._buffer.append((model_name, operation, record))
                return
        self._apply_remote(model_name, operation, record)

    def _apply_remote(
        self,
        model_name: str,
        operation: OpType,
        record: dict[str, Any],
    ) -> None:
        try:
            model = self._schema.get(model_name)
            if operation is OpType.DELETE and not record.get("_deleted"):
                record = {**record, "_deleted": True}
            if self._merger.merge(model, record) is not None:
                self._stats.records_merged += 1
        except Exception:
            logger.exception("Failed to merge remote %s", model_name)

    def _on_subscriptions_established(self) -> None:
        self._emit("subscriptionsEstablished")
        if self._ready:
            # Reconnected: catch up on what was missed while disconnected
            self._start_worker(self._scheduled_sync, "SyncEngine-resync")

    def _on_subscriptions_disconnected(self) -> None:
        self._emit("subscriptionsDisconnected")

    def _on_subscription_error(self, payload: dict[str, Any]) -> None:
        self._report(ProcessName.SUBSCRIBE, payload)

    # === Mutations ===

    def process_mutations(self) -> None:
        """Drain the outbox (blocking) if online."""
        if self._online and self.running:
            self._mutation_processor.resume()

    def notify_enqueued(self, event: MutationEvent) -> None:
        """Signal a new outbox event; drains the outbox when online."""
        self._emit(
            "outboxMutationEnqueued",
            {"model": event.model_name, "element": event.payload},
        )
        self._emit("outboxStatus", {"isEmpty": not self._outbox})

        if not self._online or not self.running:
            return
        if not self._mutation_processor.rejoin():
            self._start_worker(self.process_mutations, "SyncEngine-mutations")

    def _on_mutation_processed(
        self,
        event: MutationEvent,
        record: dict[str, Any] | None,
    ) -> None:
        self._emit(
            "outboxMutationProcessed",
            {"model": event.model_name, "element": record},
        )
        self._emit("outboxStatus", {"isEmpty": not self._outbox})

    def _report(self, process: ProcessName, error: Any) -> None:
        if self._error_handler is None:
            return
        message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
        info = SyncErrorInfo(
            operation=None,
            process=process,
            error_type=classify_error(error),
            model="",
            message=message,
            cause=error,
        )
        try:
            self._error_handler(info)
        except Exception:
            logger.exception("Error handler failed")
