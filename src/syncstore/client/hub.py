"""Lifecycle event hub.

This module provides:
- Hub: Channel-based publish/subscribe for lifecycle signals
- HubEvent: One dispatched signal

The sync engine dispatches on the "datastore" channel with payloads of the
form {"event": name, "data": {...}}. Dispatch is fire-and-forget: listener
failures are logged and never reach the dispatcher.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DATASTORE_CHANNEL = "datastore"


@dataclass
class HubEvent:
    """A signal delivered to hub listeners."""

    channel: str
    payload: dict[str, Any]

    @property
    def event(self) -> str | None:
        """The event name inside the payload."""
        return self.payload.get("event")

    @property
    def data(self) -> Any:
        """The event data inside the payload."""
        return self.payload.get("data")


HubListener = Callable[[HubEvent], None]


class Hub:
    """Thread-safe channel hub."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: dict[str, list[HubListener]] = {}

    def listen(self, channel: str, listener: HubListener) -> Callable[[], None]:
        """Register a listener on a channel.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.setdefault(channel, []).append(listener)

        def remove() -> None:
            with self._lock:
                listeners = self._listeners.get(channel, [])
                if listener in listeners:
                    listeners.remove(listener)

        return remove

    def dispatch(self, channel: str, payload: dict[str, Any]) -> None:
        """Deliver a payload to every listener of a channel."""
        with self._lock:
            listeners = list(self._listeners.get(channel, []))

        event = HubEvent(channel, payload)
        logger.debug("Hub %s: %s", channel, event.event)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Hub listener failed on %s", channel)
