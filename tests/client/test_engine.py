"""Tests for SyncEngine orchestration."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from conftest import ScriptedTransport, echo_mutation, fake_backend, fixed_backoff, operation_field

from syncstore.client.api import AuthenticationError, GraphQLOperation
from syncstore.client.hub import DATASTORE_CHANNEL, Hub, HubEvent
from syncstore.client.state import LocalStore
from syncstore.client.sync.engine import SyncEngine
from syncstore.client.sync.outbox import Outbox
from syncstore.client.sync.types import MutationEvent, SyncErrorInfo
from syncstore.core.config import DataStoreConfig
from syncstore.core.schema import Schema
from syncstore.core.types import ErrorType, OpType, ProcessName, SyncState


def wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def create_event(post_id: str, title: str = "hello") -> MutationEvent:
    return MutationEvent.create("Post", post_id, OpType.CREATE, {"id": post_id, "title": title})


class Recorder:
    """Collects datastore hub events."""

    def __init__(self, hub: Hub) -> None:
        self.events: list[HubEvent] = []
        hub.listen(DATASTORE_CHANNEL, self.events.append)

    @property
    def names(self) -> list[str | None]:
        return [e.event for e in self.events]

    def data(self, name: str) -> list[Any]:
        return [e.data for e in self.events if e.event == name]


@pytest.fixture
def hub() -> Hub:
    return Hub()


@pytest.fixture
def recorder(hub: Hub) -> Recorder:
    return Recorder(hub)


@pytest.fixture
def backend_transport() -> ScriptedTransport:
    return ScriptedTransport(default=fake_backend)


@pytest.fixture
def engine(
    schema: Schema,
    store: LocalStore,
    outbox: Outbox,
    backend_transport: ScriptedTransport,
    config: DataStoreConfig,
    hub: Hub,
) -> Iterator[SyncEngine]:
    sync_engine = SyncEngine(
        schema,
        store,
        outbox,
        backend_transport,
        config,
        dispatch=hub.dispatch,
        backoff=fixed_backoff(max_attempts=2),
    )
    yield sync_engine
    sync_engine.stop()


class TestEngineLifecycle:
    """Tests for start/stop and readiness."""

    def test_initial_state(self, engine: SyncEngine) -> None:
        assert engine.state is SyncState.STOPPED
        assert not engine.running
        assert not engine.online

    def test_start_syncs_then_ready(self, engine: SyncEngine, recorder: Recorder) -> None:
        """Without a probe the engine is online at once and syncs every model."""
        engine.start()

        assert wait_for(lambda: "ready" in recorder.names)
        assert engine.state is SyncState.READY
        assert engine.online
        assert recorder.names[:6] == [
            "networkStatus",
            "syncQueriesStarted",
            "modelSynced",
            "modelSynced",
            "syncQueriesReady",
            "ready",
        ]
        assert recorder.data("networkStatus") == [{"active": True}]
        assert recorder.data("syncQueriesStarted") == [{"models": ["Post", "Comment"]}]
        synced = recorder.data("modelSynced")
        assert [d["model"] for d in synced] == ["Post", "Comment"]
        assert all(d["isFullSync"] and not d["isDeltaSync"] for d in synced)
        assert engine.stats.syncs_completed == 1

    def test_stop(self, engine: SyncEngine, recorder: Recorder) -> None:
        engine.start()
        assert wait_for(lambda: "ready" in recorder.names)

        engine.stop()
        engine.stop()

        assert engine.state is SyncState.STOPPED
        assert not engine.online

    def test_network_status_ignored_when_stopped(self, engine: SyncEngine, recorder: Recorder) -> None:
        engine.set_network_status(True)
        assert not engine.online
        assert recorder.names == []


class TestEngineMutations:
    """Tests for outbox draining."""

    def test_drains_outbox_queued_before_start(
        self,
        engine: SyncEngine,
        store: LocalStore,
        outbox: Outbox,
        backend_transport: ScriptedTransport,
        recorder: Recorder,
    ) -> None:
        outbox.enqueue(create_event("p1"))

        engine.start()

        assert wait_for(lambda: {"isEmpty": True} in recorder.data("outboxStatus"))
        assert not outbox
        assert "createPost" in backend_transport.fields
        assert store.get("Post", "p1")["_version"] == 1  # type: ignore[index]
        processed = recorder.data("outboxMutationProcessed")[0]
        assert processed["model"] == "Post"
        assert processed["element"]["id"] == "p1"
        assert recorder.data("outboxStatus")[-1] == {"isEmpty": True}

    def test_notify_enqueued_while_online(
        self,
        engine: SyncEngine,
        outbox: Outbox,
        recorder: Recorder,
    ) -> None:
        engine.start()
        assert wait_for(lambda: "ready" in recorder.names)

        event = outbox.enqueue(create_event("p2"))
        engine.notify_enqueued(event)

        assert wait_for(lambda: not outbox)
        enqueued = recorder.data("outboxMutationEnqueued")
        assert enqueued == [{"model": "Post", "element": {"id": "p2", "title": "hello"}}]
        assert recorder.data("outboxStatus")[0] == {"isEmpty": False}

    def test_offline_keeps_mutations_queued(
        self,
        engine: SyncEngine,
        outbox: Outbox,
        backend_transport: ScriptedTransport,
        recorder: Recorder,
    ) -> None:
        """Nothing is sent while offline; going online drains the outbox."""
        engine.start()
        assert wait_for(lambda: "ready" in recorder.names)

        engine.set_network_status(False)
        assert engine.state is SyncState.OFFLINE

        event = outbox.enqueue(create_event("p3"))
        engine.notify_enqueued(event)

        assert len(outbox) == 1
        assert "createPost" not in backend_transport.fields
        assert recorder.data("networkStatus") == [{"active": True}, {"active": False}]

        engine.set_network_status(True)

        assert wait_for(lambda: not outbox)
        assert "createPost" in backend_transport.fields
        # The ready event fires once per start
        assert recorder.names.count("ready") == 1

    def test_reconnect_during_send_keeps_draining(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        config: DataStoreConfig,
        hub: Hub,
    ) -> None:
        """Going offline and back online while a send is in flight still drains the outbox."""
        started = threading.Event()
        release = threading.Event()

        def answer(operation: GraphQLOperation) -> dict[str, Any]:
            if operation_field(operation) == "createPost" and not started.is_set():
                started.set()
                assert release.wait(5)
            return fake_backend(operation)

        outbox.enqueue(create_event("p1"))
        outbox.enqueue(create_event("p2"))
        transport = ScriptedTransport(default=answer)
        engine = SyncEngine(
            schema, store, outbox, transport, config, dispatch=hub.dispatch, backoff=fixed_backoff()
        )
        try:
            engine.start()
            assert started.wait(5)

            engine.set_network_status(False)
            engine.set_network_status(True)
            release.set()

            assert wait_for(lambda: not outbox)
        finally:
            engine.stop()

        assert engine.online is False
        assert store.get("Post", "p2") is not None
        assert transport.fields.count("createPost") >= 2

    def test_enqueue_never_drains_on_caller_thread(
        self,
        engine: SyncEngine,
        outbox: Outbox,
        recorder: Recorder,
    ) -> None:
        engine.start()
        assert wait_for(lambda: "ready" in recorder.names)
        threads: list[threading.Thread] = []

        with patch.object(
            engine.mutation_processor,
            "resume",
            side_effect=lambda: threads.append(threading.current_thread()),
        ):
            engine.notify_enqueued(outbox.enqueue(create_event("p4")))
            assert wait_for(lambda: len(threads) == 1)

        assert threads[0] is not threading.current_thread()


class TestEngineSync:
    """Tests for sync and pushed records."""

    def test_sync_failure_reported(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        config: DataStoreConfig,
        hub: Hub,
        recorder: Recorder,
    ) -> None:
        """A failed sync is reported and the engine still becomes ready."""

        def deny(operation: GraphQLOperation) -> dict[str, Any]:
            if operation_field(operation).startswith("sync"):
                raise AuthenticationError("Request failed with status code 401", 401)
            return echo_mutation(operation)

        handler = MagicMock()
        engine = SyncEngine(
            schema,
            store,
            outbox,
            ScriptedTransport(default=deny),
            config,
            dispatch=hub.dispatch,
            error_handler=handler,
            backoff=fixed_backoff(max_attempts=2),
        )
        try:
            engine.start()
            assert wait_for(lambda: "ready" in recorder.names)
        finally:
            engine.stop()

        assert "syncQueriesReady" not in recorder.names
        assert engine.stats.errors == 1
        info: SyncErrorInfo = handler.call_args.args[0]
        assert info.process is ProcessName.SYNC
        assert info.error_type is ErrorType.UNAUTHORIZED

    def test_remote_records_buffered_during_sync(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        config: DataStoreConfig,
    ) -> None:
        """Records pushed mid-sync are merged once the sync finished."""
        pushed = {"id": "p9", "title": "pushed", "_version": 1}
        seen: list[Any] = []
        engines: list[SyncEngine] = []

        def answer(operation: GraphQLOperation) -> dict[str, Any]:
            field = operation_field(operation)
            if field == "syncPosts":
                engines[0].handle_remote_record("Post", OpType.CREATE, pushed)
                seen.append(store.get("Post", "p9"))
            return fake_backend(operation)

        engine = SyncEngine(schema, store, outbox, ScriptedTransport(default=answer), config)
        engines.append(engine)

        results = engine.sync()

        assert [r.model_name for r in results] == ["Post", "Comment"]
        assert seen == [None]
        assert store.get("Post", "p9")["title"] == "pushed"  # type: ignore[index]
        assert engine.stats.subscription_messages == 1

    def test_remote_record_applied(self, engine: SyncEngine, store: LocalStore) -> None:
        engine.handle_remote_record("Post", OpType.UPDATE, {"id": "p1", "title": "remote", "_version": 3})

        assert store.get("Post", "p1")["title"] == "remote"  # type: ignore[index]
        assert engine.stats.records_merged == 1

    def test_remote_delete_removes_record(self, engine: SyncEngine, store: LocalStore) -> None:
        """A delete subscription message removes the local copy."""
        store.save("Post", "p1", {"id": "p1", "title": "x", "_version": 1})

        engine.handle_remote_record("Post", OpType.DELETE, {"id": "p1", "title": "x", "_version": 2})

        assert store.get("Post", "p1") is None

    def test_subscription_drop_reported(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        config: DataStoreConfig,
        hub: Hub,
        recorder: Recorder,
    ) -> None:
        """A dropped subscription connection is announced on the hub."""
        with patch("syncstore.client.sync.engine.SubscriptionListener") as listener_class:
            SyncEngine(
                schema,
                store,
                outbox,
                ScriptedTransport(default=fake_backend),
                config,
                dispatch=hub.dispatch,
                auth_headers=dict,
            )

        callbacks = listener_class.call_args.kwargs
        callbacks["on_established"]()
        callbacks["on_disconnected"]()

        assert recorder.names == ["subscriptionsEstablished", "subscriptionsDisconnected"]

    def test_remote_record_for_unknown_model(self, engine: SyncEngine) -> None:
        engine.handle_remote_record("Nope", OpType.CREATE, {"id": "x"})
        assert engine.stats.records_merged == 0
