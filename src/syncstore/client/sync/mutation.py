"""Mutation processor: replays the outbox against the backend.

This module provides:
- MutationProcessor: Drains the outbox one event at a time

Flow per event:
    1. Claim the head event (outbox lock held only for the claim)
    2. Build the create/update/delete mutation and send it
    3. Classify a failure and act on it:

    | Category          | Action                                        |
    |-------------------|-----------------------------------------------|
    | Unauthorized      | keep the event, signal mutationError, halt    |
    | Network           | wait (capped backoff), resend, never give up  |
    | Transient         | wait (backoff), resend until backoff stops    |
    | Conflict          | ask the conflict handler, resend or discard   |
    | BadRecord / Fatal | report to the error handler, drop the event   |

    4. On success dequeue the event, rebase queued events for the same
       record on the new _version and merge the backend's record.

Concurrency:
    One run at a time per processor. resume() while a run is active sets
    a rejoin flag and returns; the active run drains the outbox again
    before it finishes, so nothing enqueued meanwhile is missed.

    stop() wakes backoff waits. A send that completes after stop() is not
    trusted: the event stays queued and is sent again on the next run.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from syncstore.client.api import GraphQLOperation, GraphQLResponseError
from syncstore.client.graphql import build_mutation, mutation_field
from syncstore.client.hub import DATASTORE_CHANNEL
from syncstore.client.sync.domain.conflicts import (
    DISCARD,
    MAX_CONFLICT_ATTEMPTS,
    ConflictData,
    last_writer_wins,
)
from syncstore.client.sync.domain.mutations import MutationAttempt
from syncstore.client.sync.errors import classify_error
from syncstore.client.sync.retry import BackoffFunction, jittered_backoff
from syncstore.client.sync.types import (
    Dispatch,
    ErrorHandler,
    ErrorRecord,
    MutationEvent,
    ProcessorStats,
    SyncErrorInfo,
)
from syncstore.core.schema import ValidationError
from syncstore.core.types import ErrorType, OpType, ProcessName

if TYPE_CHECKING:
    from syncstore.client.api import GraphQLTransport
    from syncstore.client.sync.domain.conflicts import ConflictHandler
    from syncstore.client.sync.merger import ModelMerger
    from syncstore.client.sync.outbox import Outbox
    from syncstore.core.schema import ModelDefinition, Schema

logger = logging.getLogger(__name__)

# Fields the backend computes; never part of a mutation input
SERVER_FIELDS = ("_lastChangedAt", "_deleted")

RECOVERY_SUGGESTIONS: dict[ErrorType, str] = {
    ErrorType.UNAUTHORIZED: "Re-authenticate, then restart sync to send the queued mutation",
    ErrorType.BAD_RECORD: "Check that the record matches the backend schema",
    ErrorType.CONFLICT: "Provide a conflict handler that can merge both versions",
    ErrorType.TRANSIENT: "The backend kept failing; the change was not applied",
    ErrorType.FATAL: "Inspect the cause; the change was not applied",
}

ProcessedCallback = Callable[[MutationEvent, dict[str, Any] | None], None]


class MutationProcessor:
    """Sends queued mutation events to the backend, in order."""

    def __init__(
        self,
        schema: Schema,
        outbox: Outbox,
        transport: GraphQLTransport,
        merger: ModelMerger,
        dispatch: Dispatch | None = None,
        error_handler: ErrorHandler | None = None,
        conflict_handler: ConflictHandler | None = None,
        backoff: BackoffFunction = jittered_backoff,
        auth_mode: str = "API_KEY",
        on_processed: ProcessedCallback | None = None,
    ) -> None:
        """Initialize the mutation processor.

        Args:
            schema: Model definitions used to shape mutations.
            outbox: Queue of pending events.
            transport: Executes GraphQL mutations.
            merger: Applies backend records after success.
            dispatch: Hub dispatch for lifecycle signals.
            error_handler: Receives events dropped as unrecoverable.
            conflict_handler: Resolves version conflicts (last writer wins).
            backoff: Delay policy between failed sends.
            auth_mode: Auth mode reported in mutationError signals.
            on_processed: Called after each successfully applied event.
        """
        self._schema = schema
        self._outbox = outbox
        self._transport = transport
        self._merger = merger
        self._dispatch = dispatch
        self._error_handler = error_handler
        self._conflict_handler = conflict_handler or last_writer_wins
        self._backoff = backoff
        self._auth_mode = auth_mode
        self._on_processed = on_processed

        self._state_lock = threading.Lock()
        self._processing = False
        self._rejoin = False
        self._stop_event = threading.Event()
        self._halted = False
        self._stats = ProcessorStats()

    @property
    def is_processing(self) -> bool:
        """Check if a run is active."""
        with self._state_lock:
            return self._processing

    @property
    def halted(self) -> bool:
        """Check if the last run stopped on an Unauthorized error."""
        return self._halted

    @property
    def stats(self) -> ProcessorStats:
        """Get processor statistics."""
        return self._stats

    def stop(self) -> None:
        """Stop the active run at the next safe point."""
        self._stop_event.set()
        logger.debug("Mutation processor stop requested")

    def rejoin(self) -> bool:
        """Hand new work to the active run, if there is one.

        A rejoin also withdraws an earlier stop(), so a run that was
        stopping goes on draining.

        Returns:
            True if a run is active and will pick up the work.
        """
        with self._state_lock:
            return self._rejoin_locked()

    def _rejoin_locked(self) -> bool:
        if not self._processing:
            return False
        self._rejoin = True
        self._stop_event.clear()
        logger.debug("Mutation processor already running, rejoining")
        return True

    def resume(self) -> None:
        """Send queued events until the outbox is empty.

        Returns immediately when the outbox is empty or another run is
        active (that run picks up anything new before it ends).
        """
        with self._state_lock:
            if self._rejoin_locked():
                return
            if not self._outbox:
                return
            self._processing = True
            self._rejoin = False
            self._halted = False
            self._stop_event.clear()

        logger.info("Processing %d queued mutations", len(self._outbox))
        try:
            while True:
                self._drain()
                with self._state_lock:
                    # Checked and cleared together so a late resume() is not lost
                    if (
                        not self._rejoin
                        or self._halted
                        or self._stop_event.is_set()
                    ):
                        self._processing = False
                        self._rejoin = False
                        return
                    self._rejoin = False
        except BaseException:
            with self._state_lock:
                self._processing = False
                self._rejoin = False
            self._outbox.release()
            raise

    def _drain(self) -> None:
        while not self._stop_event.is_set() and not self._halted:
            event = self._outbox.run_exclusive(lambda outbox: outbox.claim())
            if event is None:
                return
            tracked = MutationAttempt(event)
            tracked.claim()
            if not self._process(tracked):
                return

    # === Mutation shape ===

    def create_operation(
        self,
        model: ModelDefinition,
        operation: OpType,
        data: dict[str, Any],
        condition: dict[str, Any] | None = None,
    ) -> GraphQLOperation:
        """Build the GraphQL mutation for one event.

        Delete sends only the key fields and _version. Create and Update
        send writable fields; an "id" that is not part of a custom
        primary key is left out.
        """
        if operation is OpType.DELETE:
            mutation_input = {
                name: data[name] for name in model.primary_key if name in data
            }
            mutation_input["_version"] = data.get("_version")
        else:
            mutation_input = {
                name: value
                for name, value in model.writable_fields(data).items()
                if name not in SERVER_FIELDS
            }
            if mutation_input.get("_version") is None:
                mutation_input.pop("_version", None)
            if model.has_custom_primary_key and "id" not in model.primary_key:
                mutation_input.pop("id", None)

        variables: dict[str, Any] = {"input": mutation_input}
        if condition:
            variables["condition"] = condition

        return GraphQLOperation(
            query=build_mutation(model, operation),
            variables=variables,
            operation_name="operation",
        )

    # === Processing ===

    def _process(self, tracked: MutationAttempt) -> bool:
        """Send one claimed event until it succeeds or is given up.

        Returns:
            True to continue with the next event, False to stop the run.
        """
        event = tracked.event
        data = event.payload
        try:
            model = self._schema.get(event.model_name)
        except ValidationError as e:
            tracked.fail()
            self._give_up(
                event, data, ErrorRecord(ErrorType.FATAL, str(e), event=event, cause=e), None
            )
            return True
        condition = event.condition_dict
        conflict_attempts = 0

        while True:
            if self._stop_event.is_set():
                self._outbox.release()
                return False

            tracked.send()
            operation = self.create_operation(model, event.operation, data, condition)
            self._stats.sent += 1

            try:
                result = self._transport.graphql(operation)
            except Exception as e:
                error_type = classify_error(e)
                record = ErrorRecord(
                    error_type, str(e), event=event, attempt=tracked.attempt, cause=e
                )
                logger.warning(
                    "Mutation %r failed (%s): %s", event, error_type.value, e
                )

                if error_type is ErrorType.UNAUTHORIZED:
                    tracked.fail(record)
                    self._halt(event, data, record)
                    return False

                if error_type is ErrorType.CONFLICT:
                    conflict_attempts += 1
                    self._stats.conflicts += 1
                    remote = _remote_model(e)
                    if remote is not None and conflict_attempts <= MAX_CONFLICT_ATTEMPTS:
                        resolved = self._resolve_conflict(
                            model, event, data, remote, conflict_attempts - 1
                        )
                        if resolved is DISCARD:
                            tracked.fail(record)
                            self._finish(event, model, remote)
                            self._stats.discarded += 1
                            return True
                        tracked.retry(record)
                        data = resolved
                        continue

                elif error_type in (ErrorType.NETWORK, ErrorType.TRANSIENT):
                    delay = self._backoff(tracked.attempt, tracked.errors, e)
                    if delay is not False:
                        tracked.retry(record)
                        self._stats.retried += 1
                        logger.info(
                            "Retrying %r in %.1fs (attempt %d)",
                            event,
                            delay / 1000,
                            tracked.attempt + 1,
                        )
                        if self._stop_event.wait(delay / 1000):
                            self._outbox.release()
                            return False
                        continue

                tracked.fail(record)
                self._give_up(event, data, record, _remote_model(e))
                return True

            if self._stop_event.is_set():
                # Not trusted after stop(); the event is sent again later
                logger.info("Mutation %r completed after stop, keeping it queued", event)
                self._outbox.release()
                return False

            tracked.succeed()
            record_data = result.get(mutation_field(model, event.operation))
            self._finish(event, model, record_data)
            self._stats.succeeded += 1
            if self._on_processed:
                try:
                    self._on_processed(event, record_data)
                except Exception:
                    logger.exception("Processed callback failed for %r", event)
            return True

    def _finish(
        self,
        event: MutationEvent,
        model: ModelDefinition,
        record: dict[str, Any] | None,
    ) -> None:
        """Dequeue a settled event and apply the backend record."""

        def dequeue(outbox: Outbox) -> None:
            head = outbox.peek()
            if head is None or head.seq_id != event.seq_id:
                # Outbox was cleared while the event was in flight
                outbox.release()
                return
            outbox.dequeue()
            if record:
                outbox.sync_versions_on_dequeue(event.model_name, event.model_id, record)

        self._outbox.run_exclusive(dequeue)
        if record:
            self._merger.merge(model, record)

    def _resolve_conflict(
        self,
        model: ModelDefinition,
        event: MutationEvent,
        data: dict[str, Any],
        remote: dict[str, Any],
        attempts: int,
    ) -> Any:
        conflict = ConflictData(
            model_name=model.name,
            local_model=data,
            remote_model=remote,
            operation=event.operation,
            attempts=attempts,
        )
        resolved = self._conflict_handler(conflict)
        if resolved is DISCARD:
            logger.info("Conflict on %r resolved by keeping the remote record", event)
            return DISCARD

        retry_with = dict(resolved)
        # Identifier cannot change through conflict resolution
        for name in model.primary_key:
            if name in data:
                retry_with[name] = data[name]
        logger.info(
            "Conflict on %r, retrying against remote v%s",
            event,
            remote.get("_version"),
        )
        return retry_with

    def _halt(self, event: MutationEvent, data: dict[str, Any], record: ErrorRecord) -> None:
        """Stop the run on an Unauthorized error, keeping the event."""
        self._halted = True
        self._stats.unauthorized += 1
        self._outbox.release()
        logger.error(
            "Mutation %r unauthorized; processing halted until re-authentication",
            event,
        )

        if self._dispatch is not None:
            try:
                self._dispatch(
                    DATASTORE_CHANNEL,
                    {
                        "event": "mutationError",
                        "data": {
                            "errorType": ErrorType.UNAUTHORIZED.value,
                            "model": event.model_name,
                            "operation": event.operation.value,
                            "errors": _raw_errors(record.cause),
                            "authMode": self._auth_mode,
                        },
                    },
                )
            except Exception:
                logger.exception("Dispatch of mutationError failed")

        self._report(event, data, record, None)

    def _give_up(
        self,
        event: MutationEvent,
        data: dict[str, Any],
        record: ErrorRecord,
        remote: dict[str, Any] | None,
    ) -> None:
        """Report an unrecoverable event and drop it from the outbox."""
        logger.error(
            "Dropping mutation %r after %d attempts (%s): %s",
            event,
            record.attempt + 1,
            record.error_type.value,
            record.message,
        )
        self._report(event, data, record, remote)

        def dequeue(outbox: Outbox) -> None:
            head = outbox.peek()
            if head is not None and head.seq_id == event.seq_id:
                outbox.dequeue()
            else:
                outbox.release()

        self._outbox.run_exclusive(dequeue)
        self._stats.discarded += 1

    def _report(
        self,
        event: MutationEvent,
        data: dict[str, Any],
        record: ErrorRecord,
        remote: dict[str, Any] | None,
    ) -> None:
        if self._error_handler is None:
            return
        info = SyncErrorInfo(
            operation=event.operation,
            process=ProcessName.MUTATE,
            error_type=record.error_type,
            model=event.model_name,
            message=record.message,
            local_model=data,
            remote_model=remote,
            recovery_suggestion=RECOVERY_SUGGESTIONS.get(record.error_type),
            cause=record.cause,
        )
        try:
            self._error_handler(info)
        except Exception:
            logger.exception("Error handler failed for %r", event)


def _remote_model(error: Any) -> dict[str, Any] | None:
    """Backend copy of the record carried by a rejection, if any."""
    if isinstance(error, GraphQLResponseError):
        remote = error.first_error.get("data")
        return remote if isinstance(remote, dict) else None
    return None


def _raw_errors(error: Any) -> list[dict[str, Any]]:
    if isinstance(error, GraphQLResponseError):
        return list(error.errors)
    return [{"message": str(error)}]
