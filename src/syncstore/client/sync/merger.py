"""Merging of remote records into the local store.

Rules, per incoming record:
1. No queued local change for the record:
   - _deleted: remove the local copy
   - otherwise: store it unless the local copy has a newer _version
2. Local changes queued, remote older than what they were based on (or
   the same version with no conflict handler): the local changes will be
   sent and win; the remote record is skipped
3. Local changes queued, remote newer or the same version: the conflict
   handler decides
   - DISCARD: queued changes are dropped and the remote record is stored
   - anything else (default): queued changes are rebased on the remote
     _version so they overwrite it when sent (last writer wins)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from syncstore.client.sync.domain.conflicts import DISCARD, ConflictData
from syncstore.core.types import OpType

if TYPE_CHECKING:
    from syncstore.client.state import LocalStore
    from syncstore.client.sync.domain.conflicts import ConflictHandler
    from syncstore.client.sync.outbox import Outbox
    from syncstore.core.schema import ModelDefinition

logger = logging.getLogger(__name__)


def _version(record: dict[str, Any] | None) -> int:
    if not record:
        return 0
    version = record.get("_version")
    return version if isinstance(version, int) else 0


class ModelMerger:
    """Applies backend records to the local store."""

    def __init__(
        self,
        store: LocalStore,
        outbox: Outbox,
        conflict_handler: ConflictHandler | None = None,
    ) -> None:
        self._store = store
        self._outbox = outbox
        self._conflict_handler = conflict_handler

    def merge(self, model: ModelDefinition, record: dict[str, Any]) -> OpType | None:
        """Merge one remote record.

        Returns:
            The local write applied, or None if the record was skipped.
        """
        key = model.key(record)
        pending = self._outbox.get_for_model(model.name, key)

        if pending:
            latest = pending[-1]
            remote_version = _version(record)
            local_version = latest.version or 0
            stale = remote_version < local_version or (
                remote_version == local_version and self._conflict_handler is None
            )
            if stale:
                logger.debug(
                    "Skipping remote %s#%s v%s: local changes pending",
                    model.name,
                    key,
                    record.get("_version"),
                )
                return None
            if not self._resolve(model, key, record, latest.payload, latest.operation):
                return None

        return self._apply(model, key, record)

    def merge_page(self, model: ModelDefinition, records: list[dict[str, Any]]) -> int:
        """Merge a batch of records.

        Returns:
            Number of records that changed the local store.
        """
        applied = 0
        for record in records:
            if self.merge(model, record) is not None:
                applied += 1
        return applied

    def _resolve(
        self,
        model: ModelDefinition,
        key: str,
        remote: dict[str, Any],
        local: dict[str, Any],
        operation: OpType,
    ) -> bool:
        """Settle a remote change that overtook queued local changes.

        Returns:
            True if the remote record should be stored.
        """
        result: Any = None
        if self._conflict_handler is not None:
            result = self._conflict_handler(
                ConflictData(
                    model_name=model.name,
                    local_model=local,
                    remote_model=remote,
                    operation=operation,
                )
            )

        if result is DISCARD:
            self._outbox.discard_pending(model.name, key)
            logger.info("Remote %s#%s replaced queued local changes", model.name, key)
            return True

        self._outbox.sync_versions_on_dequeue(model.name, key, remote)
        logger.info(
            "Local changes to %s#%s rebased on remote v%s",
            model.name,
            key,
            remote.get("_version"),
        )
        return False

    def _apply(
        self,
        model: ModelDefinition,
        key: str,
        record: dict[str, Any],
    ) -> OpType | None:
        local = self._store.get(model.name, key)

        if record.get("_deleted"):
            if local is None:
                return None
            self._store.delete(model.name, key)
            return OpType.DELETE

        if local is not None and _version(local) > _version(record):
            logger.debug(
                "Skipping stale remote %s#%s v%s (local v%s)",
                model.name,
                key,
                record.get("_version"),
                local.get("_version"),
            )
            return None

        return self._store.save(model.name, key, record)
