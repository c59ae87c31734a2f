"""Endpoint registry: the active node endpoint and the persisted known set."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

from jamexplorer.common.config import DEFAULT_WS_URL
from jamexplorer.common.errors import InvalidEndpointError
from jamexplorer.storage.store import Store
from jamexplorer.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


def validate_endpoint(url: str) -> str:
    """Return the stripped URL if it is a usable ws:// or wss:// endpoint."""
    if not isinstance(url, str):
        raise InvalidEndpointError(f"Endpoint must be a string, got {type(url).__name__}")
    url = url.strip()
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise InvalidEndpointError(f"Cannot parse endpoint {url!r}: {e}") from e
    if parsed.scheme not in ("ws", "wss"):
        raise InvalidEndpointError(f"Endpoint scheme must be ws or wss: {url!r}")
    if not parsed.hostname:
        raise InvalidEndpointError(f"Endpoint has no hostname: {url!r}")
    return url


class EndpointRegistry:
    """Tracks the active endpoint and drives switches through the orchestrator."""

    def __init__(
        self,
        store: Store,
        orchestrator: Optional[SyncOrchestrator] = None,
        default_url: str = DEFAULT_WS_URL,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.default_url = validate_endpoint(default_url)

    @property
    def active(self) -> str:
        return self.store.get_active_endpoint() or self.default_url

    def list_known(self) -> list[str]:
        return self.store.get_known_endpoints()

    async def start(self) -> str:
        """Start syncing against the last used endpoint (or the default)."""
        url = self._remember(self.active)
        if self.orchestrator is not None:
            await self.orchestrator.start(url)
        return url

    async def set_active(self, url: str) -> str:
        """Persist and activate `url`, rebuilding transport and subscriptions."""
        url = self._remember(url)
        if self.orchestrator is not None:
            await self.orchestrator.switch_endpoint(url)
        return url

    def _remember(self, url: str) -> str:
        url = validate_endpoint(url)
        if self.store.add_known_endpoint(url):
            logger.info("Saved new endpoint %s", url)
        self.store.set_active_endpoint(url)
        return url

    def forget(self, url: str) -> bool:
        """Remove a saved endpoint; the active one cannot be removed."""
        url = validate_endpoint(url)
        if url == self.active:
            raise InvalidEndpointError(f"Cannot forget the active endpoint {url}")
        removed = self.store.remove_known_endpoint(url)
        if removed:
            logger.info("Forgot endpoint %s", url)
        return removed
