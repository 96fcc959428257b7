"""Network reachability monitoring.

This module provides:
- NetworkMonitor: Polls a probe and reports online/offline transitions

The probe is normally GraphQLClient.health_check, which treats any HTTP
answer as reachable and only transport failures as offline.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

# Default reachability configuration
NETWORK_CHECK_INTERVAL = 5.0  # seconds between checks


class NetworkMonitor:
    """Polls reachability in a background thread.

    on_change is called with the new status on every transition and once
    after the first check.
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        on_change: Callable[[bool], None],
        check_interval: float = NETWORK_CHECK_INTERVAL,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Returns True when the backend is reachable.
            on_change: Called with the new online status.
            check_interval: Seconds between probes.
        """
        self._probe = probe
        self._on_change = on_change
        self._check_interval = check_interval
        self._online: bool | None = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def online(self) -> bool | None:
        """Last known status (None before the first check)."""
        return self._online

    def set_status(self, online: bool) -> None:
        """Record a status, notifying on transitions."""
        with self._lock:
            changed = online != self._online
            self._online = online
        if changed:
            logger.info("Network is %s", "online" if online else "offline")
            try:
                self._on_change(online)
            except Exception:
                logger.exception("Network status callback failed")

    def check(self) -> bool:
        """Probe once and record the result."""
        try:
            online = bool(self._probe())
        except Exception as e:
            logger.debug("Reachability probe failed: %s", e)
            online = False
        self.set_status(online)
        return online

    def start(self) -> None:
        """Start polling in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("NetworkMonitor already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="NetworkMonitor",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    def _run(self) -> None:
        self.check()
        while not self._stop_event.wait(self._check_interval):
            self.check()
