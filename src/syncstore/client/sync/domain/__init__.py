"""Domain modules for sync business rules.

This package centralizes business logic for the sync system:
- mutations: Mutation send state machine
- conflicts: Conflict data and resolution strategies

Architecture:
    domain/ contains pure business logic without external dependencies.
    Implementation details (outbox updates, API calls) stay in the
    processors.
"""

from syncstore.client.sync.domain.conflicts import (
    DISCARD,
    MAX_CONFLICT_ATTEMPTS,
    ConflictData,
    ConflictHandler,
    last_writer_wins,
    server_wins,
)
from syncstore.client.sync.domain.mutations import (
    VALID_TRANSITIONS,
    InvalidTransitionError,
    MutationAttempt,
    MutationStatus,
)

__all__ = [
    # mutations
    "MutationStatus",
    "MutationAttempt",
    "InvalidTransitionError",
    "VALID_TRANSITIONS",
    # conflicts
    "ConflictData",
    "ConflictHandler",
    "DISCARD",
    "MAX_CONFLICT_ATTEMPTS",
    "last_writer_wins",
    "server_wins",
]
