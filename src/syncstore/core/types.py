"""Shared types for syncstore.

This module defines enums used by both the local data layer and the
sync engine.
"""

from __future__ import annotations

from enum import Enum


class OpType(str, Enum):
    """Kind of a local mutation.

    Values match the remote mutation prefixes (createX, updateX, deleteX).
    """

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"

    @property
    def graphql_prefix(self) -> str:
        """Lower-case prefix used in mutation field names."""
        return self.value.lower()


class ErrorType(str, Enum):
    """Semantic category of a failed remote call."""

    NETWORK = "Network"
    UNAUTHORIZED = "Unauthorized"
    BAD_RECORD = "BadRecord"
    TRANSIENT = "Transient"
    CONFLICT = "Conflict"
    FATAL = "Fatal"


class ProcessName(str, Enum):
    """Which part of the engine produced an error."""

    MUTATE = "mutate"
    SYNC = "sync"
    SUBSCRIBE = "subscribe"


class SyncState(str, Enum):
    """Coarse state of the sync engine.

    Reported through the hub so applications can show sync status.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    READY = "ready"
    OFFLINE = "offline"
