"""Scheduler for periodic delta syncs.

This module provides:
- SyncScheduler: Runs a sync job at a fixed interval in the background

Subscriptions deliver most changes; the periodic delta sync catches what
they miss (dropped messages, changes made while a subscription was being
re-established) and turns into a full sync once the full-sync interval
has elapsed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync"


class SyncScheduler:
    """Runs the sync job every interval seconds."""

    def __init__(self, sync_job: Callable[[], object], interval: float) -> None:
        """Initialize the scheduler.

        Args:
            sync_job: Function running one delta sync.
            interval: Seconds between runs (<= 0 disables the scheduler).
        """
        self._sync_job = sync_job
        self._interval = interval
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None

    def _job(self) -> None:
        """Job function for scheduled sync."""
        logger.debug("Starting scheduled sync")
        try:
            self._sync_job()
        except Exception:
            logger.exception("Error during scheduled sync")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running
        if self._interval <= 0:
            logger.debug("Periodic sync disabled")
            return

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(seconds=self._interval),
            id=SYNC_JOB_ID,
            name="Periodic delta sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (every %.0fs)", self._interval)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    def run_now(self) -> None:
        """Run the sync job immediately (manual trigger)."""
        self._job()
