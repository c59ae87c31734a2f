"""
Sync orchestrator: mirrors live chain activity into the record store.

Pipeline per session:
  1. Connect the transport and subscribe to new-block notifications
  2. Queue notifications and process them one at a time, in arrival order
  3. Upsert a draft record per block, then enrich it with fetched state
  4. Re-subscribe after every reconnect and record the possible gap

A clock ticker runs alongside, independent of the connection, so that
presentation can render relative times.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from jamexplorer.common.config import SyncConfig
from jamexplorer.common.errors import (
    CallCancelled,
    InvalidRecordError,
    RPCError,
    RPCTimeoutError,
    StoreError,
    SyncError,
    TransportError,
)
from jamexplorer.common.types import BlockRecord, GapMarker, now_ms, normalize_header_hash
from jamexplorer.networking.protocol import RPCClient
from jamexplorer.networking.transport import ConnectionState, WebSocketTransport
from jamexplorer.storage.store import Store

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EVENT_RECORDS = "records"     # callback(record)
EVENT_TICK = "tick"           # callback(now_ms)
EVENT_LIVENESS = "liveness"   # callback(live)
EVENTS = (EVENT_RECORDS, EVENT_TICK, EVENT_LIVENESS)

MAX_GAP_MARKERS = 100


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------

class SyncPhase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


@dataclass
class SyncStats:
    notifications: int = 0
    invalid_notifications: int = 0
    records_upserted: int = 0
    states_fetched: int = 0
    state_failures: int = 0
    store_errors: int = 0


@dataclass
class SyncSession:
    """Everything bound to one endpoint; retired wholesale on a switch."""
    endpoint: str
    transport: WebSocketTransport
    client: RPCClient
    notifications: asyncio.Queue
    phase: SyncPhase = SyncPhase.IDLE
    subscribed: bool = False
    live_since: Optional[int] = None
    disconnected_at: Optional[int] = None
    retired: bool = False
    consumer_task: Optional[asyncio.Task] = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    fetching: set[str] = field(default_factory=set)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SyncOrchestrator:
    """Coordinates transport, protocol and store for the active endpoint."""

    def __init__(
        self,
        store: Store,
        config: Optional[SyncConfig] = None,
        transport_factory: Optional[Callable[[SyncConfig], WebSocketTransport]] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.config = config or SyncConfig()
        self._transport_factory = transport_factory or WebSocketTransport
        self._clock = clock
        self.session: Optional[SyncSession] = None
        self.stats = SyncStats()
        self.gaps: list[GapMarker] = []
        self.now = clock()
        self._switch_lock = asyncio.Lock()
        self._ticker_task: Optional[asyncio.Task] = None
        self._listeners: dict[str, list[Callable]] = {event: [] for event in EVENTS}
        self._last_live = False

    # -----------------------------------------------------------------
    # Observable state
    # -----------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        return self.session.phase if self.session is not None else SyncPhase.IDLE

    @property
    def live(self) -> bool:
        return self.session is not None and self.session.transport.is_open

    @property
    def endpoint(self) -> Optional[str]:
        return self.session.endpoint if self.session is not None else None

    def add_listener(self, event: str, callback: Callable) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("%s listener failed", event)

    def _notify_liveness(self) -> None:
        live = self.live
        if live != self._last_live:
            self._last_live = live
            self._emit(EVENT_LIVENESS, live)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self, endpoint: str) -> None:
        """Start the clock ticker and sync against `endpoint`."""
        self._start_ticker()
        await self.switch_endpoint(endpoint)

    async def switch_endpoint(self, endpoint: str) -> None:
        """Retire the current session, then bring up one for `endpoint`.

        The old transport is fully closed before the new one connects.
        Bring-up runs as a session task, so a later switch or stop cancels
        its pending connect or subscribe instead of waiting it out.
        """
        async with self._switch_lock:
            await self._retire_session()
            session = self._new_session(endpoint)
            self.session = session
            task = self._spawn(session, self._bring_up(session))
        await asyncio.wait({task})

    async def retry(self) -> None:
        """Rebuild the session on the current endpoint (after DISCONNECTED)."""
        if self.session is None:
            raise TransportError("No endpoint to retry")
        await self.switch_endpoint(self.session.endpoint)

    async def stop(self) -> None:
        """Retire the session and cancel the ticker."""
        async with self._switch_lock:
            await self._retire_session()
        task, self._ticker_task = self._ticker_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Sync stopped")

    def _new_session(self, endpoint: str) -> SyncSession:
        transport = self._transport_factory(self.config)
        session = SyncSession(
            endpoint=endpoint,
            transport=transport,
            client=RPCClient(transport, self.config),
            notifications=asyncio.Queue(maxsize=self.config.notification_queue_size),
        )
        transport.add_listener(lambda state: self._on_transport_state(session, state))
        return session

    async def _bring_up(self, session: SyncSession) -> None:
        logger.info("Starting sync against %s", session.endpoint)
        session.phase = SyncPhase.CONNECTING
        session.client.start()
        session.consumer_task = asyncio.create_task(self._consume(session))
        try:
            await session.transport.connect(session.endpoint)
        except TransportError as e:
            logger.warning("Cannot reach %s: %s", session.endpoint, e)
            session.phase = SyncPhase.RECONNECTING
            session.transport.schedule_reconnect()
            return
        await self._subscribe(session)

    async def _retire_session(self) -> None:
        session, self.session = self.session, None
        if session is None:
            return
        session.retired = True
        logger.info("Retiring session for %s", session.endpoint)

        # Pending calls resolve with CallCancelled before their tasks go away
        await session.client.close()
        await asyncio.sleep(0)

        tasks = list(session.tasks)
        if session.consumer_task is not None:
            tasks.append(session.consumer_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await session.transport.disconnect()
        session.phase = SyncPhase.IDLE
        self._notify_liveness()

    def _on_transport_state(self, session: SyncSession, state: ConnectionState) -> None:
        if session.retired:
            return
        if state is ConnectionState.RECONNECTING:
            if session.phase is SyncPhase.LIVE:
                session.disconnected_at = self._clock()
            session.phase = SyncPhase.RECONNECTING
        elif state is ConnectionState.OPEN:
            if session.phase in (SyncPhase.RECONNECTING, SyncPhase.DISCONNECTED):
                self._spawn(session, self._subscribe(session))
        elif state is ConnectionState.DISCONNECTED:
            session.phase = SyncPhase.DISCONNECTED
            logger.error(
                "Lost %s for good; switch endpoint or retry to resume", session.endpoint
            )
        self._notify_liveness()

    async def _subscribe(self, session: SyncSession) -> None:
        session.phase = SyncPhase.SUBSCRIBING
        try:
            if session.subscribed:
                await session.client.resubscribe()
            else:
                await session.client.subscribe(
                    self.config.new_block_topic,
                    lambda payload: self._enqueue(session, payload),
                )
                session.subscribed = True
        except CallCancelled:
            return
        except SyncError as e:
            logger.warning("Subscription on %s failed: %s", session.endpoint, e)
            return

        if session.retired:
            return
        now = self._clock()
        if session.disconnected_at is not None:
            gap = GapMarker(session.endpoint, session.disconnected_at, now)
            self.gaps.append(gap)
            del self.gaps[:-MAX_GAP_MARKERS]
            logger.warning(
                "Resynced with %s at %d; blocks since %d may be missing",
                session.endpoint, now, session.disconnected_at,
            )
            session.disconnected_at = None
        session.phase = SyncPhase.LIVE
        session.live_since = now
        logger.info("Live on %s", session.endpoint)
        self._notify_liveness()

    # -----------------------------------------------------------------
    # Notification processing
    # -----------------------------------------------------------------

    async def _enqueue(self, session: SyncSession, payload: Any) -> None:
        if not session.retired:
            await session.notifications.put(payload)

    async def _consume(self, session: SyncSession) -> None:
        while True:
            payload = await session.notifications.get()
            try:
                await self.handle_new_block(session, payload)
            except Exception:
                logger.exception("Unexpected error processing block notification")

    async def handle_new_block(self, session: SyncSession, payload: Any) -> Optional[BlockRecord]:
        """Upsert a draft record for the notified block and start enrichment."""
        self.stats.notifications += 1
        try:
            draft = BlockRecord.from_notification(payload, created_at=self._clock())
        except InvalidRecordError as e:
            self.stats.invalid_notifications += 1
            logger.warning("Dropping block notification: %s", e)
            return None

        stored = self._upsert(draft)
        if stored is None:
            return None

        header_hash = stored.header_hash
        if not stored.has_state and header_hash not in session.fetching:
            session.fetching.add(header_hash)
            self._spawn(session, self._enrich(session, header_hash))
        return stored

    async def _enrich(self, session: SyncSession, header_hash: str) -> None:
        try:
            state = await self.fetch_state(session, header_hash)
        except CallCancelled:
            logger.debug("State fetch for %s cancelled", header_hash)
            return
        finally:
            session.fetching.discard(header_hash)

        if state is None:
            self.stats.state_failures += 1
            return
        if self._upsert(BlockRecord.with_state(header_hash, state)) is not None:
            self.stats.states_fetched += 1

    async def fetch_state(self, session: SyncSession, header_hash: str) -> Any:
        """Fetch state for a block; None after a bounded number of failures."""
        attempts = self.config.state_fetch_attempts
        for attempt in range(1, attempts + 1):
            try:
                state = await session.client.call(self.config.get_state_method, [header_hash])
            except (RPCTimeoutError, RPCError, TransportError) as e:
                logger.warning(
                    "State fetch for %s failed (attempt %d/%d): %s",
                    header_hash, attempt, attempts, e,
                )
            else:
                if state is not None:
                    return state
                logger.warning(
                    "Node returned no state for %s (attempt %d/%d)",
                    header_hash, attempt, attempts,
                )
            if attempt < attempts:
                await asyncio.sleep(self.config.state_fetch_retry_delay)
        return None

    def _upsert(self, record: BlockRecord) -> Optional[BlockRecord]:
        try:
            stored = self.store.upsert(record)
        except StoreError as e:
            self.stats.store_errors += 1
            logger.warning("Failed to persist %s: %s", record.header_hash, e)
            return None
        self.stats.records_upserted += 1
        self._emit(EVENT_RECORDS, stored)
        return stored

    def _spawn(self, session: SyncSession, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    # -----------------------------------------------------------------
    # Clock
    # -----------------------------------------------------------------

    def _start_ticker(self) -> None:
        if self._ticker_task is None or self._ticker_task.done():
            self._ticker_task = asyncio.create_task(self._tick_loop())

    async def _tick_loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.config.tick_interval)

    def tick(self) -> int:
        self.now = self._clock()
        self._emit(EVENT_TICK, self.now)
        return self.now

    # -----------------------------------------------------------------
    # Read-only view
    # -----------------------------------------------------------------

    def latest_blocks(self, limit: Optional[int] = None) -> list[BlockRecord]:
        return self.store.list_sorted(limit)

    def get_block(self, header_hash: str) -> Optional[BlockRecord]:
        return self.store.get_by_hash(normalize_header_hash(header_hash))

    def latest_reports(self, limit: Optional[int] = None) -> list[dict]:
        """Work reports of the newest blocks, newest first."""
        reports: list[dict] = []
        for record in self.store.list_sorted():
            for report in record.reports():
                if limit is not None and len(reports) >= limit:
                    return reports
                reports.append({
                    "headerHash": record.header_hash,
                    "createdAt": record.created_at,
                    "coreIndex": report.core_index,
                    "workPackageHash": report.work_package_hash,
                    "report": report.raw,
                })
        return reports

    def latest_extrinsics(self, limit: Optional[int] = None) -> list[dict]:
        """Extrinsic items of the newest blocks, newest first."""
        items: list[dict] = []
        for record in self.store.list_sorted():
            for extrinsic in record.extrinsics():
                if limit is not None and len(items) >= limit:
                    return items
                items.append({
                    "headerHash": record.header_hash,
                    "createdAt": record.created_at,
                    "kind": extrinsic.kind,
                    "index": extrinsic.index,
                    "extrinsic": extrinsic.raw,
                })
        return items

    def status(self) -> dict:
        session = self.session
        return {
            "endpoint": self.endpoint,
            "phase": self.phase.value,
            "live": self.live,
            "now": self.now,
            "liveSince": session.live_since if session is not None else None,
            "reconnects": session.transport.reconnects if session is not None else 0,
            "pendingCalls": session.client.pending_calls if session is not None else 0,
            "records": self.store.count(),
            "gaps": [gap.to_json() for gap in self.gaps],
        }

    def metrics(self) -> dict[str, float | int]:
        """Counters for the /metrics endpoint."""
        return {
            "jamexplorer_notifications_total": self.stats.notifications,
            "jamexplorer_invalid_notifications_total": self.stats.invalid_notifications,
            "jamexplorer_records_upserted_total": self.stats.records_upserted,
            "jamexplorer_states_fetched_total": self.stats.states_fetched,
            "jamexplorer_state_failures_total": self.stats.state_failures,
            "jamexplorer_store_errors_total": self.stats.store_errors,
            "jamexplorer_gaps_total": len(self.gaps),
            "jamexplorer_live": int(self.live),
        }


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Sync task failed: %r", exc)
