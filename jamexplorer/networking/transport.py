"""
WebSocket transport to a node's JSON-RPC endpoint.

Owns one connection at a time. Inbound frames are queued in arrival order
for the protocol layer; an unexpected close starts a bounded exponential
backoff reconnection loop that ends either in a fresh connection or in the
terminal DISCONNECTED state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from jamexplorer.common.config import SyncConfig
from jamexplorer.common.errors import NotConnectedError, TransportError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    DISCONNECTED = "disconnected"   # reconnection attempts exhausted


StateListener = Callable[[ConnectionState], None]


class WebSocketTransport:
    """One WebSocket connection with reconnection policy."""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        connector: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._connector = connector or websockets.connect
        self.url: Optional[str] = None
        self.state = ConnectionState.IDLE
        self.inbound: asyncio.Queue = asyncio.Queue(maxsize=self.config.inbound_queue_size)
        self.reconnects = 0
        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._listeners: list[StateListener] = []

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and self._ws is not None

    # -----------------------------------------------------------------
    # State observation
    # -----------------------------------------------------------------

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.debug("Transport %s: %s -> %s", self.url, self.state.value, state.value)
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection state listener failed")

    # -----------------------------------------------------------------
    # Connection lifecycle
    # -----------------------------------------------------------------

    async def connect(self, url: str) -> None:
        """Open a connection to `url`, superseding any previous one.

        Raises TransportError if the endpoint is unreachable or the
        handshake fails.
        """
        await self._stop_reconnect()
        await self._close_socket()
        self.url = url
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open(url)
        except TransportError:
            self._set_state(ConnectionState.CLOSED)
            raise
        logger.info("Connected to %s", url)
        self._set_state(ConnectionState.OPEN)

    async def disconnect(self) -> None:
        """Close the connection and stop reconnecting. Idempotent."""
        self._closing = True
        await self._stop_reconnect()
        await self._close_socket()
        if self.state not in (ConnectionState.IDLE, ConnectionState.CLOSED):
            logger.info("Disconnected from %s", self.url)
            self._set_state(ConnectionState.CLOSED)

    def schedule_reconnect(self) -> None:
        """Start the backoff loop against the current URL, if not running."""
        if self.url is None:
            raise TransportError("No endpoint to reconnect to")
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._closing = False
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(self.url))

    async def send(self, message: Any) -> None:
        """Send a JSON-serializable message (or raw text)."""
        if not self.is_open:
            raise NotConnectedError(f"Not connected (state={self.state.value})")
        data = message if isinstance(message, str) else json.dumps(message)
        try:
            await self._ws.send(data)
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Send to {self.url} failed: {e}") from e

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    async def _open(self, url: str) -> None:
        try:
            ws = await asyncio.wait_for(
                self._connector(
                    url,
                    ping_interval=self.config.ping_interval,
                    ping_timeout=self.config.ping_timeout,
                ),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection to {url} timed out") from e
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Cannot connect to {url}: {e}") from e

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                await self.inbound.put(frame)
        except ConnectionClosed as e:
            logger.warning("Connection to %s closed: %s", self.url, e)
        except (WebSocketException, OSError) as e:
            logger.warning("Connection to %s failed: %s", self.url, e)

        # A superseded socket or a requested close is not a failure
        if ws is not self._ws or self._closing:
            return
        self._ws = None
        self._reader_task = None
        self.schedule_reconnect()

    async def _reconnect_loop(self, url: str) -> None:
        attempts = self.config.reconnect_max_attempts
        for attempt in range(attempts):
            delay = self.config.backoff_delay(attempt)
            logger.info(
                "Reconnecting to %s in %.1fs (attempt %d/%d)",
                url, delay, attempt + 1, attempts,
            )
            await asyncio.sleep(delay)
            try:
                await self._open(url)
            except TransportError as e:
                logger.warning("Reconnect attempt %d/%d failed: %s", attempt + 1, attempts, e)
                continue
            self.reconnects += 1
            self._reconnect_task = None
            logger.info("Reconnected to %s", url)
            self._set_state(ConnectionState.OPEN)
            return

        self._reconnect_task = None
        logger.error("Giving up on %s after %d reconnect attempts", url, attempts)
        self._set_state(ConnectionState.DISCONNECTED)

    async def _stop_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug("Error closing socket to %s: %s", self.url, e)
