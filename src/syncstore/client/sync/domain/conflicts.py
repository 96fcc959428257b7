"""Conflict resolution strategies.

A conflict happens when the backend rejects a mutation because the
record's _version moved on (errorType "ConflictUnhandled"). The handler
decides what to do:

- return a record dict: send it again as the same operation, against
  the remote _version
- return DISCARD: drop the local change and keep the remote record

Built-in strategies:
- last_writer_wins (default): the local change is re-sent and wins
- server_wins: the remote record is kept
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Final, Protocol

from syncstore.core.types import OpType

# Resolution attempts per event before the conflict is reported as an error
MAX_CONFLICT_ATTEMPTS = 10


class _Discard:
    """Sentinel type for DISCARD."""

    _instance: _Discard | None = None

    def __new__(cls) -> _Discard:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DISCARD"


DISCARD: Final = _Discard()


@dataclass
class ConflictData:
    """Everything a conflict handler needs to decide.

    Attributes:
        model_name: Model of the conflicting record.
        local_model: Payload the client tried to send.
        remote_model: Record as the backend currently holds it.
        operation: The rejected mutation kind.
        attempts: Resolution attempts already made for this event.
    """

    model_name: str
    local_model: dict[str, Any]
    remote_model: dict[str, Any]
    operation: OpType
    attempts: int = 0


class ConflictHandler(Protocol):
    """Protocol for resolving a rejected mutation."""

    def __call__(self, conflict: ConflictData) -> dict[str, Any] | _Discard:
        """Return the record to retry with, or DISCARD."""
        ...


def last_writer_wins(conflict: ConflictData) -> dict[str, Any]:
    """Retry the local change on top of the remote version."""
    retry_model = dict(conflict.local_model)
    retry_model["_version"] = conflict.remote_model.get("_version")
    return retry_model


def server_wins(conflict: ConflictData) -> _Discard:
    """Keep the remote record and drop the local change."""
    return DISCARD
