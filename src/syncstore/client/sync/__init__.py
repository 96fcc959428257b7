"""Sync of the local store with a GraphQL backend.

Architecture:
    DataStore → Outbox → MutationProcessor → GraphQL backend
    GraphQL backend → SyncProcessor / SubscriptionListener → ModelMerger → LocalStore

Components:
- **Outbox**: Durable FIFO of pending mutations with per-record merging
- **MutationProcessor**: Sends outbox events one at a time, retrying,
  resolving conflicts and reporting unrecoverable events
- **SyncProcessor**: Paginated full/delta sync queries
- **SubscriptionListener**: Realtime created/updated/deleted records
- **ModelMerger**: Applies backend records to the local store
- **SyncEngine**: Orchestrates all of the above from reachability changes
- **jittered_backoff / classify_error**: Retry policy and error categories

All public symbols are re-exported here.
"""

from syncstore.client.sync.domain import (
    DISCARD,
    ConflictData,
    ConflictHandler,
    InvalidTransitionError,
    MutationStatus,
    last_writer_wins,
    server_wins,
)
from syncstore.client.sync.engine import SyncEngine
from syncstore.client.sync.errors import classify_error, is_network_error
from syncstore.client.sync.merger import ModelMerger
from syncstore.client.sync.mutation import MutationProcessor
from syncstore.client.sync.outbox import Outbox
from syncstore.client.sync.reachability import NetworkMonitor
from syncstore.client.sync.remote_listener import SubscriptionListener
from syncstore.client.sync.retry import (
    BASE_TIME_MS,
    JITTER_MS,
    MAX_ATTEMPTS_EXPONENT,
    MAX_RETRY_DELAY_MS,
    jittered_backoff,
    retry,
)
from syncstore.client.sync.scheduler import SyncScheduler
from syncstore.client.sync.sync_processor import ModelSyncResult, SyncProcessor
from syncstore.client.sync.types import (
    BadRecordError,
    ConflictError,
    EmptyQueueError,
    ErrorRecord,
    FatalError,
    MutationEvent,
    NetworkError,
    NonRetryableError,
    SyncCancelledError,
    SyncError,
    SyncErrorInfo,
    TransientError,
    UnauthorizedError,
)

__all__ = [
    # Engine
    "SyncEngine",
    "MutationProcessor",
    "SyncProcessor",
    "ModelSyncResult",
    "SubscriptionListener",
    "ModelMerger",
    "NetworkMonitor",
    "SyncScheduler",
    # Outbox
    "Outbox",
    "MutationEvent",
    # Retry / errors
    "BASE_TIME_MS",
    "JITTER_MS",
    "MAX_ATTEMPTS_EXPONENT",
    "MAX_RETRY_DELAY_MS",
    "jittered_backoff",
    "retry",
    "classify_error",
    "is_network_error",
    "ErrorRecord",
    "SyncErrorInfo",
    "SyncError",
    "NetworkError",
    "TransientError",
    "UnauthorizedError",
    "BadRecordError",
    "ConflictError",
    "FatalError",
    "EmptyQueueError",
    "NonRetryableError",
    "SyncCancelledError",
    # Domain
    "MutationStatus",
    "InvalidTransitionError",
    "ConflictData",
    "ConflictHandler",
    "DISCARD",
    "last_writer_wins",
    "server_wins",
]
