"""Tests for the periodic sync scheduler."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

from syncstore.client.sync.scheduler import SYNC_JOB_ID, SyncScheduler


class TestSyncScheduler:
    """Tests for SyncScheduler."""

    def test_disabled_interval(self) -> None:
        scheduler = SyncScheduler(MagicMock(), interval=0)
        scheduler.start()
        assert not scheduler.running

    def test_start_registers_job(self) -> None:
        scheduler = SyncScheduler(MagicMock(), interval=60)
        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler._scheduler.get_job(SYNC_JOB_ID)  # type: ignore[union-attr]
            assert job is not None
            assert job.max_instances == 1
            scheduler.start()  # already running
        finally:
            scheduler.stop()
        assert not scheduler.running

    def test_job_runs_periodically(self) -> None:
        ran = threading.Event()
        scheduler = SyncScheduler(ran.set, interval=0.05)
        scheduler.start()
        try:
            assert ran.wait(5)
        finally:
            scheduler.stop()

    def test_run_now(self) -> None:
        job = MagicMock()
        SyncScheduler(job, interval=0).run_now()
        job.assert_called_once()

    def test_job_errors_are_logged(self) -> None:
        """A failing sync does not propagate out of the job."""
        job = MagicMock(side_effect=RuntimeError("sync failed"))
        SyncScheduler(job, interval=0).run_now()
        job.assert_called_once()

    def test_stop_when_not_running(self) -> None:
        SyncScheduler(MagicMock(), interval=60).stop()
