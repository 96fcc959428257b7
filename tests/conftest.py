"""Shared fixtures for syncstore tests."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from syncstore.client.api import GraphQLOperation
from syncstore.client.state import LocalStore
from syncstore.client.sync.outbox import Outbox
from syncstore.core.config import DataStoreConfig
from syncstore.core.schema import FieldDefinition, ModelDefinition, Schema

ENDPOINT = "https://abc123.appsync-api.us-east-1.amazonaws.com/graphql"

_FIELD_RE = re.compile(r"^\s+(\w+)\(", re.MULTILINE)


def make_schema(version: str = "1") -> Schema:
    """Post/Comment schema plus a local-only Draft model."""
    return Schema(
        [
            ModelDefinition(
                "Post",
                fields={
                    "title": FieldDefinition("title", required=True),
                    "rating": FieldDefinition("rating", "Int"),
                    "tags": FieldDefinition("tags", is_array=True),
                },
            ),
            ModelDefinition(
                "Comment",
                fields={
                    "postId": FieldDefinition("postId", "ID", required=True),
                    "content": FieldDefinition("content"),
                },
            ),
            ModelDefinition(
                "Draft",
                fields={"body": FieldDefinition("body")},
                syncable=False,
            ),
        ],
        version=version,
    )


def operation_field(operation: GraphQLOperation) -> str:
    """Top-level field of a GraphQL document (e.g. "createPost")."""
    match = _FIELD_RE.search(operation.query)
    assert match, operation.query
    return match.group(1)


def echo_mutation(operation: GraphQLOperation) -> dict[str, Any]:
    """Answer a mutation like the backend: the input with a bumped _version."""
    field = operation_field(operation)
    record = dict(operation.variables.get("input", {}))
    record["_version"] = (record.get("_version") or 0) + 1
    record["_lastChangedAt"] = 1700000000000
    record["_deleted"] = field.startswith("delete")
    return {field: record}


def fake_backend(operation: GraphQLOperation) -> dict[str, Any]:
    """Answer sync queries with an empty page and echo mutations."""
    field = operation_field(operation)
    if field.startswith("sync"):
        return {field: {"items": [], "nextToken": None, "startedAt": 1000}}
    return echo_mutation(operation)


class ScriptedTransport:
    """GraphQL transport replaying scripted answers.

    Each answer is a data dict, an exception to raise, or a callable
    taking the operation. Once the script is used up, default answers.
    """

    def __init__(self, default: Any = None) -> None:
        self.answers: list[Any] = []
        self.default = default
        self.operations: list[GraphQLOperation] = []
        self._lock = threading.Lock()

    def graphql(self, operation: GraphQLOperation) -> dict[str, Any]:
        with self._lock:
            self.operations.append(operation)
            answer = self.answers.pop(0) if self.answers else self.default
        if callable(answer):
            answer = answer(operation)
        if isinstance(answer, BaseException):
            raise answer
        return answer or {}

    @property
    def fields(self) -> list[str]:
        """Top-level field of every operation sent, in order."""
        return [operation_field(op) for op in self.operations]


def fixed_backoff(delay_ms: int = 1, max_attempts: int | None = None) -> Callable[..., int | bool]:
    """Backoff returning a tiny constant delay, optionally giving up."""

    def backoff(attempt: int, prior_errors: Any = None, latest_error: Any = None) -> int | bool:
        if max_attempts is not None and attempt >= max_attempts:
            return False
        return delay_ms

    return backoff


@pytest.fixture
def schema() -> Schema:
    """Post/Comment/Draft schema."""
    return make_schema()


@pytest.fixture
def config() -> DataStoreConfig:
    """In-memory config with periodic sync disabled."""
    return DataStoreConfig(
        endpoint=ENDPOINT,
        api_key="da2-testkey",
        sync_interval=0,
        sync_page_size=2,
    )


@pytest.fixture
def store() -> Iterator[LocalStore]:
    """In-memory local store."""
    local = LocalStore()
    yield local
    local.close()


@pytest.fixture
def outbox() -> Iterator[Outbox]:
    """In-memory outbox."""
    queue = Outbox()
    yield queue
    queue.close()


@pytest.fixture
def transport() -> ScriptedTransport:
    """Transport that echoes mutations unless scripted otherwise."""
    return ScriptedTransport(default=echo_mutation)
