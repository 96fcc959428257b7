"""Realtime subscription listener for backend-origin changes.

This module provides:
- SubscriptionListener: WebSocket client for the AppSync realtime
  protocol, delivering created/updated/deleted records as they happen

Architecture:
    Backend ─push─► SubscriptionListener ─► on_record ─► SyncEngine ─► ModelMerger

Protocol (subprotocol "graphql-ws"):
    client: connection_init            server: connection_ack
    client: start {id, query}          server: start_ack {id}
                                       server: data {id, payload}
                                       server: ka (keep-alive)
                                       server: error / connection_error
    client: stop {id}

One subscription is started per syncable model and operation kind
(onCreateX, onUpdateX, onDeleteX). When every start is acknowledged the
listener reports itself established. On disconnect it reconnects after
reconnect_delay; the engine runs a delta sync on every (re)connect to
catch up with changes missed in between.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import ssl
import threading
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import websockets
from websockets.exceptions import WebSocketException

from syncstore.client.graphql import build_subscription, subscription_field
from syncstore.core.types import OpType

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from syncstore.core.config import DataStoreConfig
    from syncstore.core.schema import ModelDefinition, Schema

logger = logging.getLogger(__name__)

SUBPROTOCOL = "graphql-ws"
DEFAULT_KEEP_ALIVE_TIMEOUT = 300.0  # seconds, until connection_ack says otherwise

RecordCallback = Callable[[str, OpType, dict[str, Any]], None]
ErrorCallback = Callable[[dict[str, Any]], None]


class SubscriptionListener:
    """WebSocket listener for realtime model changes.

    Usage:
        listener = SubscriptionListener(
            config=config,
            schema=schema,
            auth_headers=client.auth_headers,
            on_record=engine.handle_remote_record,
        )
        listener.start()
        # ...
        listener.stop()
    """

    def __init__(
        self,
        config: DataStoreConfig,
        schema: Schema,
        auth_headers: Callable[[], dict[str, str]],
        on_record: RecordCallback,
        on_established: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Initialize the subscription listener.

        Args:
            config: Endpoint, TLS and reconnection settings.
            schema: Models to subscribe to.
            auth_headers: Builds the auth headers for the handshake.
            on_record: Called with (model name, operation, record).
            on_established: Called when all subscriptions are acknowledged.
            on_disconnected: Called when an established connection drops.
            on_error: Called with error payloads sent by the backend.
        """
        self._config = config
        self._schema = schema
        self._auth_headers = auth_headers
        self._on_record = on_record
        self._on_established = on_established
        self._on_disconnected = on_disconnected
        self._on_error = on_error
        self._reconnect_delay = config.reconnect_delay

        # Connection state
        self._ws: ClientConnection | None = None
        self._connected = False
        self._established = False
        self._should_run = False
        self._keep_alive_timeout = DEFAULT_KEEP_ALIVE_TIMEOUT

        # subscription id -> (model name, operation)
        self._subscriptions: dict[str, tuple[str, OpType]] = {}
        self._pending_acks: set[str] = set()

        # Thread and loop
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None  # For interruptible sleep

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected

    @property
    def established(self) -> bool:
        """Check if every subscription was acknowledged."""
        return self._established

    @property
    def ws_url(self) -> str:
        """Get the realtime WebSocket URL."""
        return self._config.ws_url

    def _handshake_headers(self) -> dict[str, str]:
        headers = {"host": urlparse(self._config.endpoint).netloc}
        headers.update(self._auth_headers())
        return headers

    def connection_url(self) -> str:
        """Build the handshake URL carrying the encoded auth headers."""
        header = base64.b64encode(
            json.dumps(self._handshake_headers()).encode("utf-8")
        ).decode("ascii")
        payload = base64.b64encode(b"{}").decode("ascii")
        return f"{self.ws_url}?header={header}&payload={payload}"

    def start(self) -> None:
        """Start the listener in a background thread."""
        if self._thread and self._thread.is_alive():
            logger.warning("SubscriptionListener already running")
            return

        self._should_run = True
        self._thread = threading.Thread(
            target=self._run_loop,
            name="SubscriptionListener",
            daemon=True,
        )
        self._thread.start()
        logger.info("SubscriptionListener started")

    def stop(self) -> None:
        """Stop the listener."""
        self._should_run = False

        # Signal stop event to interrupt any sleeps
        if self._loop and self._stop_event:
            asyncio.run_coroutine_threadsafe(
                self._signal_stop(), self._loop
            )

        # Close WebSocket connection
        if self._loop and self._ws:
            with contextlib.suppress(TimeoutError):
                asyncio.run_coroutine_threadsafe(
                    self._close_connection(), self._loop
                ).result(timeout=2.0)

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        logger.info("SubscriptionListener stopped")

    async def _signal_stop(self) -> None:
        """Signal the stop event to interrupt sleeps."""
        if self._stop_event:
            self._stop_event.set()

    def _run_loop(self) -> None:
        """Run the async event loop in a thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._stop_event = asyncio.Event()

        try:
            self._loop.run_until_complete(self._connection_loop())
        finally:
            self._loop.close()
            self._loop = None
            self._stop_event = None

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._should_run:
            was_established = False
            try:
                await self._connect()
                await self._start_subscriptions()
                await self._listen_for_messages()
            except WebSocketException as e:
                logger.warning("SubscriptionListener disconnected: %s", e)
            except (ConnectionRefusedError, OSError) as e:
                logger.debug("Connection error: %s", e)
            except Exception as e:
                logger.warning("SubscriptionListener error: %s", e)
                logger.debug("Full traceback:", exc_info=True)
            finally:
                was_established = self._established
                await self._close_connection()

            if was_established and self._on_disconnected:
                try:
                    self._on_disconnected()
                except Exception:
                    logger.exception("Disconnect callback failed")

            if not self._should_run:
                break

            logger.info(
                "SubscriptionListener reconnecting in %.0fs...",
                self._reconnect_delay,
            )
            # Use interruptible sleep - will wake on stop signal
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),  # type: ignore[union-attr]
                    timeout=self._reconnect_delay,
                )
                break
            except TimeoutError:
                pass

    async def _connect(self) -> None:
        """Establish WebSocket connection and complete the handshake."""
        ssl_context: ssl.SSLContext | None = None
        if self.ws_url.startswith("wss://"):
            ssl_context = ssl.create_default_context()
            if not self._config.verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ws = await websockets.connect(
            self.connection_url(),
            ssl=ssl_context,
            subprotocols=[SUBPROTOCOL],  # type: ignore[list-item]
            open_timeout=self._config.timeout,
            close_timeout=5,
        )
        await self._send({"type": "connection_init"})

        while True:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self._config.timeout)
            message = json.loads(raw)
            msg_type = message.get("type")
            if msg_type == "connection_ack":
                timeout_ms = (message.get("payload") or {}).get("connectionTimeoutMs")
                if timeout_ms:
                    self._keep_alive_timeout = timeout_ms / 1000
                break
            if msg_type == "connection_error":
                self._report_error(message.get("payload") or {})
                raise ConnectionError(f"Subscription handshake failed: {message}")

        self._connected = True
        logger.info("SubscriptionListener connected")

    def build_start_messages(self) -> list[dict[str, Any]]:
        """Build one start message per model and operation kind.

        Also resets the subscription id map for the new connection.
        """
        self._subscriptions.clear()
        messages = []
        authorization = self._handshake_headers()
        for model in self._schema.syncable_models:
            for operation in OpType:
                subscription_id = str(uuid.uuid4())
                self._subscriptions[subscription_id] = (model.name, operation)
                messages.append({
                    "id": subscription_id,
                    "type": "start",
                    "payload": {
                        "data": json.dumps({
                            "query": build_subscription(model, operation),
                            "variables": {},
                        }),
                        "extensions": {"authorization": authorization},
                    },
                })
        self._pending_acks = set(self._subscriptions)
        self._established = False
        return messages

    async def _start_subscriptions(self) -> None:
        for message in self.build_start_messages():
            await self._send(message)
        logger.debug("Requested %d subscriptions", len(self._subscriptions))

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(message))

    async def _listen_for_messages(self) -> None:
        """Listen for incoming messages until the connection drops."""
        while self._should_run and self._ws:
            try:
                message = await asyncio.wait_for(
                    self._ws.recv(),
                    timeout=self._keep_alive_timeout,
                )
            except TimeoutError:
                logger.warning("No keep-alive from backend, reconnecting")
                return
            except websockets.ConnectionClosed:
                logger.info("Connection closed by server")
                return

            if isinstance(message, bytes):
                message = message.decode("utf-8")
            await self._handle_message(message)

    async def _handle_message(self, message: str) -> None:
        """Handle incoming message from the backend.

        Args:
            message: Raw message string.
        """
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Invalid message received: %s", message[:100])
            return

        msg_type = data.get("type")

        if msg_type == "ka":
            return

        if msg_type == "start_ack":
            self._pending_acks.discard(data.get("id"))
            if not self._pending_acks and not self._established:
                self._established = True
                logger.info("Subscriptions established")
                if self._on_established:
                    self._on_established()
            return

        if msg_type == "data":
            self._emit_record(data.get("id"), data.get("payload") or {})
            return

        if msg_type in ("error", "connection_error"):
            self._report_error(data.get("payload") or {})
            return

        if msg_type == "complete":
            logger.debug("Subscription %s completed", data.get("id"))
            return

        logger.debug("Ignoring message type %s", msg_type)

    def _emit_record(self, subscription_id: str | None, payload: dict[str, Any]) -> None:
        """Pass a pushed record to the record callback."""
        target = self._subscriptions.get(subscription_id or "")
        if target is None:
            logger.warning("Data for unknown subscription %s", subscription_id)
            return

        model_name, operation = target
        if payload.get("errors"):
            self._report_error(payload)

        model: ModelDefinition = self._schema.get(model_name)
        record = (payload.get("data") or {}).get(subscription_field(model, operation))
        if not record:
            return

        logger.debug("Received %s %s", operation.value, model_name)
        try:
            self._on_record(model_name, operation, record)
        except Exception:
            logger.exception("Record callback failed for %s", model_name)

    def _report_error(self, payload: dict[str, Any]) -> None:
        logger.warning("Subscription error: %s", payload.get("errors") or payload)
        if self._on_error:
            try:
                self._on_error(payload)
            except Exception:
                logger.exception("Error callback failed")

    async def _close_connection(self) -> None:
        """Close the WebSocket connection."""
        if self._ws:
            with contextlib.suppress(WebSocketException):
                await self._ws.close()
            self._ws = None
        self._connected = False
        self._established = False
