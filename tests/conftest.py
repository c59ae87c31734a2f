"""
Shared pytest fixtures for jam-explorer tests.

FakeNode plays a JAM node on the far end of in-memory WebSocket
connections: it answers subscribe and state requests, pushes new-block
notifications, and can refuse, stall or drop connections on demand.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from typing import Any, Callable, Optional

import pytest
from websockets.exceptions import ConnectionClosedError

from jamexplorer.common.config import GET_STATE_METHOD, SUBSCRIBE_METHOD, SyncConfig
from jamexplorer.networking.transport import WebSocketTransport
from jamexplorer.storage.memory_backend import MemoryBackend
from jamexplorer.storage.sqlite_backend import SQLiteBackend
from jamexplorer.sync.orchestrator import SyncOrchestrator


# =============================================================================
# Fake WebSocket and node
# =============================================================================

_CLOSE = object()


class FakeWebSocket:
    """In-memory client connection: frames pushed by the node are iterated."""

    def __init__(self, node: FakeNode, url: str) -> None:
        self.node = node
        self.url = url
        self.sent: list[dict] = []
        self.closed = False
        self.subscription: Optional[str] = None
        self._frames: asyncio.Queue = asyncio.Queue()

    def push(self, message: Any) -> None:
        self._frames.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        """Simulate the node going away without a close handshake."""
        self._frames.put_nowait(_CLOSE)

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        request = json.loads(data)
        self.sent.append(request)
        self.node.handle(self, request)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            frame = await self._frames.get()
            if frame is _CLOSE:
                self.closed = True
                raise ConnectionClosedError(None, None)
            yield frame


class FakeNode:
    """Scripted JAM node speaking JSON-RPC over FakeWebSocket connections."""

    def __init__(self) -> None:
        self.connections: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.requests: list[dict] = []
        self.states: dict[str, Any] = {}
        self.errors: dict[str, dict] = {}
        self.silent: set[str] = set()     # methods never answered
        self.held: set[str] = set()       # methods answered on release()
        self._held_requests: list[tuple[FakeWebSocket, dict]] = []
        self.refuse_all = False
        self.refuse_next = 0

    @property
    def ws(self) -> FakeWebSocket:
        return self.connections[-1]

    async def connect(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        if self.refuse_all or self.refuse_next > 0:
            self.refuse_next = max(0, self.refuse_next - 1)
            raise OSError("Connection refused")
        ws = FakeWebSocket(self, url)
        self.connections.append(ws)
        return ws

    def calls_to(self, method: str) -> list[dict]:
        return [r for r in self.requests if r.get("method") == method]

    def handle(self, ws: FakeWebSocket, request: dict) -> None:
        self.requests.append(request)
        method = request.get("method")
        if method in self.silent:
            return
        if method in self.held:
            self._held_requests.append((ws, request))
            return
        self._answer(ws, request)

    def release(self) -> None:
        held, self._held_requests = self._held_requests, []
        for ws, request in held:
            self._answer(ws, request)

    def _answer(self, ws: FakeWebSocket, request: dict) -> None:
        method = request["method"]
        if method in self.errors:
            ws.push({"jsonrpc": "2.0", "id": request["id"], "error": self.errors[method]})
            return
        if method == SUBSCRIBE_METHOD:
            ws.subscription = f"sub-{len(self.connections)}"
            result: Any = ws.subscription
        elif method == GET_STATE_METHOD:
            result = self.states.get(request["params"][0])
        else:
            result = True
        ws.push({"jsonrpc": "2.0", "id": request["id"], "result": result})

    def notify_block(self, header_hash: str, block: Optional[dict] = None,
                     ws: Optional[FakeWebSocket] = None) -> None:
        ws = ws or self.ws
        ws.push({
            "jsonrpc": "2.0",
            "method": "jam.NewBlock",
            "params": {
                "subscription": ws.subscription,
                "result": {"headerHash": header_hash, "block": block},
            },
        })


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fast_config():
    """Config with short timeouts and backoff for tests."""
    return SyncConfig(
        connect_timeout=0.5,
        call_timeout=0.2,
        reconnect_initial_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_max_attempts=3,
        state_fetch_attempts=1,
        state_fetch_retry_delay=0.01,
        tick_interval=0.01,
    )


@pytest.fixture
def node():
    return FakeNode()


@pytest.fixture
def make_transport(node, fast_config):
    """Factory for transports wired to the fake node."""
    def factory(config: Optional[SyncConfig] = None) -> WebSocketTransport:
        return WebSocketTransport(config or fast_config, connector=node.connect)
    return factory


@pytest.fixture
def memory_store():
    return MemoryBackend()


@pytest.fixture
def sqlite_path():
    """Path to a temporary SQLite database, removed afterwards."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    yield db_path
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def sqlite_store(sqlite_path):
    store = SQLiteBackend(sqlite_path)
    yield store
    store.close()


@pytest.fixture
def make_orchestrator(memory_store, make_transport, fast_config):
    """Factory for orchestrators syncing from the fake node."""
    def factory(store=None, clock: Optional[Callable[[], int]] = None,
                config: Optional[SyncConfig] = None) -> SyncOrchestrator:
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return SyncOrchestrator(
            store if store is not None else memory_store,
            config or fast_config,
            transport_factory=make_transport,
            **kwargs,
        )
    return factory


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds."""
    async def waiter(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within %.1fs" % timeout)
            await asyncio.sleep(0.005)
    return waiter
