"""Configuration classes for syncstore.

This module defines the configuration shared by the GraphQL transport,
the subscription listener and the sync engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

# Auth modes that only need a header built from a key or a token
AUTH_MODES = frozenset({
    "API_KEY",
    "AMAZON_COGNITO_USER_POOLS",
    "OPENID_CONNECT",
    "AWS_LAMBDA",
})


@dataclass
class DataStoreConfig:
    """Configuration for connecting a DataStore to a GraphQL backend.

    Attributes:
        endpoint: GraphQL HTTP endpoint (e.g. "https://x.appsync-api.region.amazonaws.com/graphql").
        auth_mode: One of AUTH_MODES.
        api_key: API key, required when auth_mode is API_KEY.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        data_dir: Directory for the SQLite files (None = in-memory).
        sync_page_size: Records requested per sync page.
        max_records_to_sync: Upper bound of records pulled per model per sync.
        full_sync_interval: Seconds between full (non-delta) syncs.
        sync_interval: Seconds between periodic delta syncs (0 = disabled).
        network_check_interval: Seconds between reachability probes.
        reconnect_delay: Seconds between subscription reconnection attempts.
    """

    endpoint: str
    auth_mode: str = "API_KEY"
    api_key: str | None = None
    timeout: float = 30.0
    verify_ssl: bool = True
    data_dir: Path | None = None
    sync_page_size: int = 1000
    max_records_to_sync: int = 10000
    full_sync_interval: float = 24 * 60 * 60.0
    sync_interval: float = 300.0
    network_check_interval: float = 5.0
    reconnect_delay: float = 5.0

    def __post_init__(self) -> None:
        """Normalize endpoint and validate auth settings."""
        self.endpoint = self.endpoint.rstrip("/")
        self.auth_mode = self.auth_mode.upper()
        if self.auth_mode not in AUTH_MODES:
            raise ValueError(f"Unsupported auth mode: {self.auth_mode}")
        if self.auth_mode == "API_KEY" and not self.api_key:
            raise ValueError("api_key is required for API_KEY auth mode")
        if self.data_dir is not None:
            self.data_dir = Path(self.data_dir)

    @property
    def ws_url(self) -> str:
        """Get the realtime WebSocket URL for subscriptions.

        AppSync serves subscriptions on a sibling "appsync-realtime-api"
        host; other endpoints keep their host and switch scheme.
        """
        url = self.endpoint
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return url.replace("appsync-api", "appsync-realtime-api", 1)

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.endpoint.startswith("https://")

    @property
    def store_path(self) -> Path | None:
        """SQLite file for model records and sync metadata."""
        if self.data_dir is None:
            return None
        return self.data_dir / "datastore.db"

    @property
    def outbox_path(self) -> Path | None:
        """SQLite file for pending mutation events."""
        if self.data_dir is None:
            return None
        return self.data_dir / "outbox.db"
