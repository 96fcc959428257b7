"""Tests for full and delta sync."""

from __future__ import annotations

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest
from conftest import ScriptedTransport, fixed_backoff

from syncstore.client.api import AuthenticationError, GraphQLResponseError
from syncstore.client.state import LocalStore, ModelSyncMetadata
from syncstore.client.sync.merger import ModelMerger
from syncstore.client.sync.outbox import Outbox
from syncstore.client.sync.sync_processor import SyncProcessor
from syncstore.client.sync.types import (
    SyncCancelledError,
    SyncErrorInfo,
    TransientError,
    UnauthorizedError,
)
from syncstore.core.config import DataStoreConfig
from syncstore.core.schema import Schema
from syncstore.core.types import ErrorType, ProcessName


def page(items: list[dict[str, Any]], next_token: str | None = None, started_at: int = 1000, field: str = "syncPosts") -> dict[str, Any]:
    return {field: {"items": items, "nextToken": next_token, "startedAt": started_at}}


def post(post_id: str, version: int = 1, **fields: Any) -> dict[str, Any]:
    return {"id": post_id, "title": f"title {post_id}", "_version": version, "_lastChangedAt": 1, "_deleted": False, **fields}


@pytest.fixture
def sync_transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def processor(
    schema: Schema,
    store: LocalStore,
    outbox: Outbox,
    sync_transport: ScriptedTransport,
    config: DataStoreConfig,
) -> SyncProcessor:
    return SyncProcessor(
        schema,
        store,
        sync_transport,
        ModelMerger(store, outbox),
        config,
        backoff=fixed_backoff(max_attempts=2),
    )


class TestFullSyncDecision:
    """Tests for choosing full vs delta sync."""

    def test_never_synced_is_full(self, schema: Schema, processor: SyncProcessor) -> None:
        assert processor.is_full_sync(schema.get("Post"))

    def test_recent_full_sync_is_delta(self, schema: Schema, store: LocalStore, processor: SyncProcessor) -> None:
        store.set_sync_metadata(ModelSyncMetadata("Post", last_sync=1000, last_full_sync=1000, full_sync_interval=500))
        assert not processor.is_full_sync(schema.get("Post"), now=1400)
        assert processor.is_full_sync(schema.get("Post"), now=1500)

    def test_changed_predicate_forces_full(self, schema: Schema, store: LocalStore, outbox: Outbox, config: DataStoreConfig) -> None:
        store.set_sync_metadata(ModelSyncMetadata("Post", last_sync=1000, last_full_sync=1000))
        processor = SyncProcessor(
            schema,
            store,
            ScriptedTransport(),
            ModelMerger(store, outbox),
            config,
            sync_predicates={"Post": {"rating": {"gt": 3}}},
        )
        assert processor.is_full_sync(schema.get("Post"), now=1001)

    def test_default_interval_from_config(self, schema: Schema, processor: SyncProcessor) -> None:
        assert processor.get_metadata(schema.get("Post")).full_sync_interval == 86400000


class TestSyncModel:
    """Tests for syncing one model."""

    def test_paginates_and_merges(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        """All pages are fetched with the next token and merged."""
        sync_transport.answers = [
            page([post("p1"), post("p2")], next_token="t1", started_at=5000),
            page([post("p3")], started_at=6000),
        ]

        result = processor.sync_model(schema.get("Post"))

        assert result.is_full_sync
        assert result.fetched == 3
        assert result.applied == 3
        assert result.pages == 2
        assert store.count("Post") == 3
        first, second = sync_transport.operations
        assert first.variables == {"limit": 2, "nextToken": None, "lastSync": None}
        assert second.variables["nextToken"] == "t1"

    def test_checkpoint_written_after_last_page(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        """lastSync is the startedAt of the first page."""
        sync_transport.answers = [page([post("p1")], started_at=5000)]

        processor.sync_model(schema.get("Post"))

        metadata = store.get_sync_metadata("Post")
        assert metadata is not None
        assert metadata.last_sync == 5000
        assert metadata.last_full_sync == 5000

    def test_delta_sync_sends_last_sync(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        store.set_sync_metadata(ModelSyncMetadata("Post", last_sync=4000, last_full_sync=4000, full_sync_interval=10**15))
        sync_transport.answers = [page([post("p1", 2)], started_at=7000)]

        result = processor.sync_model(schema.get("Post"))

        assert not result.is_full_sync
        assert sync_transport.operations[0].variables["lastSync"] == 4000
        metadata = store.get_sync_metadata("Post")
        assert metadata.last_sync == 7000  # type: ignore[union-attr]
        assert metadata.last_full_sync == 4000  # type: ignore[union-attr]

    def test_record_limit(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        sync_transport: ScriptedTransport,
        config: DataStoreConfig,
    ) -> None:
        """Paging stops at max_records_to_sync."""
        config.max_records_to_sync = 3
        processor = SyncProcessor(schema, store, sync_transport, ModelMerger(store, outbox), config)
        sync_transport.answers = [
            page([post("p1"), post("p2")], next_token="t1"),
            page([post("p3")], next_token="t2"),
        ]

        result = processor.sync_model(schema.get("Post"))

        assert result.fetched == 3
        assert len(sync_transport.operations) == 2
        assert sync_transport.operations[1].variables["limit"] == 1

    def test_deleted_records_removed(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        store.save("Post", "p1", {"id": "p1", "title": "x", "_version": 1})
        sync_transport.answers = [page([post("p1", 2, _deleted=True)])]

        processor.sync_model(schema.get("Post"))

        assert store.get("Post", "p1") is None

    def test_null_items_skipped(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        sync_transport.answers = [page([post("p1"), None])]  # type: ignore[list-item]
        assert processor.sync_model(schema.get("Post")).fetched == 1


class TestSyncErrors:
    """Tests for failures during sync."""

    def test_transient_error_retried(
        self,
        schema: Schema,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        sync_transport.answers = [
            GraphQLResponseError([{"message": "boom"}], status_code=503),
            page([post("p1")]),
        ]

        assert processor.sync_model(schema.get("Post")).fetched == 1
        assert len(sync_transport.operations) == 2

    def test_exhausted_retries_raise_classified(
        self,
        schema: Schema,
        store: LocalStore,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        """The failure surfaces as the matching SyncError, checkpoint untouched."""
        sync_transport.default = GraphQLResponseError([{"message": "boom"}], status_code=503)

        with pytest.raises(TransientError) as exc_info:
            processor.sync_model(schema.get("Post"))

        assert isinstance(exc_info.value.cause, GraphQLResponseError)
        assert store.get_sync_metadata("Post") is None
        assert len(sync_transport.operations) == 3

    def test_unauthorized_not_retried(
        self,
        schema: Schema,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        sync_transport.default = AuthenticationError("Request failed with status code 401", 401)

        with pytest.raises(UnauthorizedError):
            processor.sync_model(schema.get("Post"))
        assert len(sync_transport.operations) == 1

    def test_partial_page_kept_and_reported(
        self,
        schema: Schema,
        store: LocalStore,
        outbox: Outbox,
        sync_transport: ScriptedTransport,
        config: DataStoreConfig,
    ) -> None:
        """Per-record errors are reported while the rest of the page merges."""
        handler = MagicMock()
        processor = SyncProcessor(
            schema, store, sync_transport, ModelMerger(store, outbox), config, error_handler=handler
        )
        sync_transport.answers = [
            GraphQLResponseError(
                [{"message": "Cannot return null for non-nullable type: 'String' within parent 'Post'", "data": {"id": "p2"}}],
                data=page([post("p1")]),
            )
        ]

        result = processor.sync_model(schema.get("Post"))

        assert result.fetched == 1
        assert store.get("Post", "p1") is not None
        info: SyncErrorInfo = handler.call_args.args[0]
        assert info.process is ProcessName.SYNC
        assert info.error_type is ErrorType.BAD_RECORD
        assert info.model == "Post"
        assert info.remote_model == {"id": "p2"}

    def test_cancelled(
        self,
        schema: Schema,
        processor: SyncProcessor,
    ) -> None:
        stop = threading.Event()
        stop.set()
        with pytest.raises(SyncCancelledError):
            processor.sync_model(schema.get("Post"), stop_event=stop)


class TestSyncAll:
    """Tests for syncing every model."""

    def test_syncs_syncable_models_in_order(
        self,
        processor: SyncProcessor,
        sync_transport: ScriptedTransport,
    ) -> None:
        sync_transport.answers = [
            page([post("p1")]),
            page([{"id": "c1", "postId": "p1", "_version": 1}], field="syncComments"),
        ]
        synced = []

        results = processor.sync_all(on_model_synced=synced.append)

        assert [r.model_name for r in results] == ["Post", "Comment"]
        assert synced == results
        assert sync_transport.fields == ["syncPosts", "syncComments"]
