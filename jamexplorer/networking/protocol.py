"""
JSON-RPC 2.0 request/notification protocol over a WebSocketTransport.

Requests carry a fresh integer id and resolve when a frame with the same id
arrives. Frames without a pending id are notifications, routed to topic
handlers by subscription id or method name. Anything else is logged and
dropped; the dispatch loop never stops on a bad frame.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from jamexplorer.common.config import SyncConfig
from jamexplorer.common.errors import (
    CallCancelled,
    RPCError,
    RPCTimeoutError,
    SyncError,
    TransportError,
)
from jamexplorer.networking.transport import ConnectionState, WebSocketTransport

logger = logging.getLogger(__name__)


Handler = Callable[[Any], Union[Awaitable[None], None]]


def _is_key(value: Any) -> bool:
    """True for values usable as a request or subscription id."""
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def _to_rpc_error(error: Any) -> RPCError:
    if isinstance(error, dict):
        code = error.get("code")
        return RPCError(
            code if isinstance(code, int) else -32603,
            str(error.get("message", "Unknown error")),
            error.get("data"),
        )
    return RPCError(-32603, str(error))


class RPCClient:
    """Correlates calls with responses and routes notifications."""

    def __init__(self, transport: WebSocketTransport, config: Optional[SyncConfig] = None) -> None:
        self.transport = transport
        self.config = config or transport.config
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._handlers: dict[str, list[Handler]] = {}
        self._subscription_ids: dict[Any, str] = {}  # node subscription id -> topic
        self._dispatch_task: Optional[asyncio.Task] = None
        self._closed = False
        self.dropped_frames = 0
        transport.add_listener(self._on_transport_state)

    @property
    def pending_calls(self) -> int:
        return len(self._pending)

    @property
    def topics(self) -> list[str]:
        return list(self._handlers)

    def start(self) -> None:
        """Start consuming the transport's inbound queue."""
        if self._dispatch_task is None:
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    async def close(self) -> None:
        """Fail pending calls with CallCancelled and stop dispatching."""
        self._closed = True
        self.transport.remove_listener(self._on_transport_state)
        self._fail_pending(CallCancelled, "session closed")
        task, self._dispatch_task = self._dispatch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._handlers.clear()
        self._subscription_ids.clear()

    # -----------------------------------------------------------------
    # Calls
    # -----------------------------------------------------------------

    async def call(self, method: str, params: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for its result.

        Raises RPCTimeoutError, RPCError, CallCancelled or TransportError.
        """
        if self._closed:
            raise CallCancelled(f"{method}: session closed")

        req_id = next(self._ids)
        request = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": method,
            "params": params if params is not None else [],
        }
        future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        window = timeout if timeout is not None else self.config.call_timeout
        try:
            await self.transport.send(request)
            return await asyncio.wait_for(future, timeout=window)
        except asyncio.TimeoutError as e:
            raise RPCTimeoutError(f"{method} timed out after {window}s") from e
        finally:
            self._pending.pop(req_id, None)

    def _fail_pending(self, exc_type: type[SyncError], reason: str) -> None:
        pending, self._pending = self._pending, {}
        for req_id, future in pending.items():
            if not future.done():
                future.set_exception(exc_type(f"call {req_id}: {reason}"))

    def _on_transport_state(self, state: ConnectionState) -> None:
        # Responses never cross a reconnect
        if state is not ConnectionState.OPEN and self._pending:
            logger.debug("Failing %d pending calls: transport %s", len(self._pending), state.value)
            self._fail_pending(TransportError, "connection lost")

    # -----------------------------------------------------------------
    # Subscriptions
    # -----------------------------------------------------------------

    async def subscribe(self, topic: str, handler: Handler) -> Any:
        """Subscribe to `topic` and route its notifications to `handler`."""
        # Register first so notifications racing the ack are not lost
        self._handlers.setdefault(topic, []).append(handler)
        try:
            return await self._issue_subscribe(topic)
        except BaseException:
            self._remove_handler(topic, handler)
            raise

    async def resubscribe(self) -> None:
        """Re-issue every registered subscription on the current connection."""
        self._subscription_ids.clear()
        for topic in list(self._handlers):
            await self._issue_subscribe(topic)

    async def unsubscribe(self, topic: str) -> None:
        self._handlers.pop(topic, None)
        sub_ids = [sid for sid, t in self._subscription_ids.items() if t == topic]
        for sub_id in sub_ids:
            del self._subscription_ids[sub_id]
            if not self.transport.is_open:
                continue
            try:
                await self.call(self.config.unsubscribe_method, [sub_id])
            except SyncError as e:
                logger.debug("Unsubscribe %s (%s) failed: %s", topic, sub_id, e)

    async def _issue_subscribe(self, topic: str) -> Any:
        sub_id = await self.call(self.config.subscribe_method, [topic])
        if _is_key(sub_id):
            self._subscription_ids[sub_id] = topic
        logger.info("Subscribed to %s (subscription=%s)", topic, sub_id)
        return sub_id

    def _remove_handler(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[topic]

    # -----------------------------------------------------------------
    # Demultiplexing
    # -----------------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        while True:
            frame = await self.transport.inbound.get()
            await self.dispatch(frame)

    async def dispatch(self, frame: Any) -> None:
        """Handle one inbound frame (text, bytes or decoded JSON)."""
        if isinstance(frame, (str, bytes, bytearray)):
            try:
                frame = json.loads(frame)
            except ValueError:
                self._drop("malformed JSON", frame, logging.WARNING)
                return

        messages = frame if isinstance(frame, list) else [frame]
        for message in messages:
            await self._dispatch_one(message)

    async def _dispatch_one(self, message: Any) -> None:
        if not isinstance(message, dict):
            self._drop("not an object", message)
            return

        req_id = message.get("id")
        if _is_key(req_id) and req_id in self._pending:
            future = self._pending.pop(req_id)
            if future.done():
                return
            if message.get("error") is not None:
                future.set_exception(_to_rpc_error(message["error"]))
            else:
                future.set_result(message.get("result"))
            return

        if isinstance(message.get("method"), str):
            topic, payload = self._route(message)
            handlers = self._handlers.get(topic)
            if not handlers:
                self._drop(f"no handler for {topic}", message)
                return
            for handler in list(handlers):
                try:
                    result = handler(payload)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Notification handler for %s failed", topic)
            return

        self._drop("unmatched frame", message)

    def _route(self, message: dict) -> tuple[str, Any]:
        """Resolve a notification's topic and payload."""
        method = message["method"]
        params = message.get("params")
        if isinstance(params, dict):
            sub_id = params.get("subscription")
            topic = self._subscription_ids.get(sub_id, method) if _is_key(sub_id) else method
            payload = params["result"] if "result" in params else params
            return topic, payload
        return method, message.get("result", params)

    def _drop(self, reason: str, frame: Any, level: int = logging.DEBUG) -> None:
        self.dropped_frames += 1
        logger.log(level, "Dropping frame (%s): %.200r", reason, frame)
