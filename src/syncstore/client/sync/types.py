"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError and its subclasses: one exception class per error category
- EmptyQueueError, NonRetryableError, SyncCancelledError: outbox / retry
  control exceptions
- MutationEvent: A pending local change owned by the outbox
- ErrorRecord: One failed attempt, consumed by classifier and backoff
- SyncErrorInfo: What the injected error handler receives
- ProcessorStats, EngineStats: Counters
- Type aliases for callbacks
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from syncstore.core.types import ErrorType, OpType, ProcessName


class SyncError(Exception):
    """Base exception for sync errors."""

    error_type: ErrorType = ErrorType.FATAL

    def __init__(self, message: str, cause: Any = None) -> None:
        super().__init__(message)
        self.cause = cause


class NetworkError(SyncError):
    """Connectivity lost; retried forever with capped delay."""

    error_type = ErrorType.NETWORK


class TransientError(SyncError):
    """Server-side failure or timeout; retried with bounded backoff."""

    error_type = ErrorType.TRANSIENT


class UnauthorizedError(SyncError):
    """Session is not authorized; halts processing until re-auth."""

    error_type = ErrorType.UNAUTHORIZED


class BadRecordError(SyncError):
    """Backend rejected the record (schema/validation)."""

    error_type = ErrorType.BAD_RECORD


class ConflictError(SyncError):
    """Version mismatch with the backend copy of a record."""

    error_type = ErrorType.CONFLICT


class FatalError(SyncError):
    """Unclassified failure."""

    error_type = ErrorType.FATAL


class EmptyQueueError(SyncError):
    """Dequeue was called on an empty outbox."""


class NonRetryableError(SyncError):
    """Raised inside a retried function to stop retrying immediately."""


class SyncCancelledError(SyncError):
    """A retry loop was stopped before the call succeeded."""


_ERROR_CLASSES: dict[ErrorType, type[SyncError]] = {
    ErrorType.NETWORK: NetworkError,
    ErrorType.TRANSIENT: TransientError,
    ErrorType.UNAUTHORIZED: UnauthorizedError,
    ErrorType.BAD_RECORD: BadRecordError,
    ErrorType.CONFLICT: ConflictError,
    ErrorType.FATAL: FatalError,
}


def error_class_for(error_type: ErrorType) -> type[SyncError]:
    """Get the exception class for an error category."""
    return _ERROR_CLASSES[error_type]


@dataclass
class MutationEvent:
    """A pending local change waiting to be applied remotely.

    Attributes:
        model_name: Target model name.
        model_id: Storage key of the target record.
        operation: Create, Update or Delete.
        data: JSON payload (snapshot, or changed fields for updates).
        condition: JSON optimistic-concurrency condition ("{}" if none).
        seq_id: FIFO sequence id, assigned by the outbox.
        version: Last known backend _version of the record.
        created_at: Unix timestamp when the event was created.
    """

    model_name: str
    model_id: str
    operation: OpType
    data: str
    condition: str = "{}"
    seq_id: int | None = None
    version: int | None = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        model_name: str,
        model_id: str,
        operation: OpType,
        data: dict[str, Any],
        condition: dict[str, Any] | None = None,
    ) -> MutationEvent:
        """Create a new MutationEvent from a payload dict.

        Args:
            model_name: Target model
            model_id: Storage key of the record
            operation: Mutation kind
            data: Record snapshot or update diff
            condition: Optional condition dict

        Returns:
            A new MutationEvent without a sequence id
        """
        return cls(
            model_name=model_name,
            model_id=model_id,
            operation=OpType(operation),
            data=json.dumps(data),
            condition=json.dumps(condition or {}),
            version=data.get("_version"),
        )

    @property
    def payload(self) -> dict[str, Any]:
        """Decoded data payload."""
        result: dict[str, Any] = json.loads(self.data)
        return result

    @property
    def condition_dict(self) -> dict[str, Any]:
        """Decoded condition."""
        result: dict[str, Any] = json.loads(self.condition) if self.condition else {}
        return result

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"MutationEvent({self.operation.value}, "
            f"{self.model_name}#{self.model_id}, "
            f"seq={self.seq_id})"
        )


@dataclass
class ErrorRecord:
    """One failed attempt at sending a mutation event.

    Attributes:
        error_type: Classified category.
        message: Human-readable message.
        event: The event being sent.
        attempt: Zero-based attempt number.
        cause: The raw transport/service error.
    """

    error_type: ErrorType
    message: str
    event: MutationEvent | None = None
    attempt: int = 0
    cause: Any = None


@dataclass
class SyncErrorInfo:
    """Context given to the application's error handler.

    Attributes:
        operation: Mutation kind (None outside mutation processing).
        process: Which process failed ("mutate", "sync", "subscribe").
        error_type: Classified category.
        model: Model name.
        message: Human-readable message.
        local_model: The local payload, when relevant.
        remote_model: The backend copy, when returned.
        recovery_suggestion: Hint for the application.
        cause: The raw error.
    """

    operation: OpType | None
    process: ProcessName
    error_type: ErrorType
    model: str
    message: str
    local_model: dict[str, Any] | None = None
    remote_model: dict[str, Any] | None = None
    recovery_suggestion: str | None = None
    cause: Any = None


@dataclass
class ProcessorStats:
    """Statistics for the mutation processor."""

    sent: int = 0
    succeeded: int = 0
    retried: int = 0
    discarded: int = 0
    conflicts: int = 0
    unauthorized: int = 0


@dataclass
class EngineStats:
    """Statistics for the sync engine."""

    syncs_completed: int = 0
    records_merged: int = 0
    subscription_messages: int = 0
    errors: int = 0


# Type aliases for callbacks
ErrorHandler = Callable[[SyncErrorInfo], None]
Dispatch = Callable[[str, dict[str, Any]], None]
