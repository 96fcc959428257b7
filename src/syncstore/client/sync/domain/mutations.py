"""Mutation send state machine.

States:
    IDLE -> CLAIMED -> SENDING -> SUCCEEDED
                               -> RETRYING -> SENDING
                               -> FAILED

All state transitions are validated.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import IntEnum, auto
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from syncstore.client.sync.types import ErrorRecord, MutationEvent


class MutationStatus(IntEnum):
    """Status of one outbox event while the processor handles it."""

    IDLE = auto()
    CLAIMED = auto()
    SENDING = auto()
    RETRYING = auto()
    SUCCEEDED = auto()
    FAILED = auto()


# Valid state transitions
VALID_TRANSITIONS: dict[MutationStatus, set[MutationStatus]] = {
    MutationStatus.IDLE: {MutationStatus.CLAIMED},
    MutationStatus.CLAIMED: {MutationStatus.SENDING, MutationStatus.FAILED},
    MutationStatus.SENDING: {
        MutationStatus.SUCCEEDED,
        MutationStatus.RETRYING,
        MutationStatus.FAILED,
    },
    MutationStatus.RETRYING: {MutationStatus.SENDING, MutationStatus.FAILED},
    MutationStatus.SUCCEEDED: set(),  # Terminal
    MutationStatus.FAILED: set(),  # Terminal
}


class InvalidTransitionError(Exception):
    """Raised when attempting invalid state transition."""


@dataclass
class MutationAttempt:
    """Tracks one outbox event through send, retry and outcome.

    Attributes:
        event: The claimed outbox event
        status: Current status
        attempt: Number of failed sends so far
        errors: Failures recorded for this event
        started_at: When the event was claimed
    """

    event: MutationEvent
    status: MutationStatus = MutationStatus.IDLE
    attempt: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)

    def transition_to(self, new_status: MutationStatus) -> None:
        """Transition to a new status with validation."""
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot transition from {self.status.name} to {new_status.name}"
            )
        self.status = new_status

    def claim(self) -> None:
        self.transition_to(MutationStatus.CLAIMED)

    def send(self) -> None:
        self.transition_to(MutationStatus.SENDING)

    def succeed(self) -> None:
        self.transition_to(MutationStatus.SUCCEEDED)

    def retry(self, error: ErrorRecord) -> None:
        """Record a retryable failure."""
        self.errors.append(error)
        self.attempt += 1
        self.transition_to(MutationStatus.RETRYING)

    def fail(self, error: ErrorRecord | None = None) -> None:
        """Mark the event as failed (terminal)."""
        if error is not None:
            self.errors.append(error)
        self.transition_to(MutationStatus.FAILED)

    @property
    def is_terminal(self) -> bool:
        """Check if the event reached a terminal state."""
        return self.status in (MutationStatus.SUCCEEDED, MutationStatus.FAILED)

    @property
    def elapsed(self) -> float:
        """Seconds since the event was claimed."""
        return time.time() - self.started_at
