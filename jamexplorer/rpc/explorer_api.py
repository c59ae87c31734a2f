"""
explorer_ namespace JSON-RPC API handlers.

Read-only view of the synchronized chain for presentation, plus endpoint
management. Sync-layer errors raised here are mapped to JSON-RPC errors
by the server.
"""

from __future__ import annotations

import logging
from typing import Any

from jamexplorer.common.types import normalize_header_hash
from jamexplorer.rpc.server import (
    RPCServer,
    RPCError,
    INVALID_PARAMS,
)
from jamexplorer.sync.endpoints import EndpointRegistry
from jamexplorer.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 12
MAX_LIST_LIMIT = 1000


def _parse_limit(limit: Any) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise RPCError(INVALID_PARAMS, f"limit must be an integer, got {limit!r}")
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise RPCError(INVALID_PARAMS, f"limit must be between 1 and {MAX_LIST_LIMIT}")
    return limit


def register_explorer_api(
    rpc: RPCServer,
    orchestrator: SyncOrchestrator,
    registry: EndpointRegistry,
) -> None:
    """Register all explorer_ namespace methods."""

    @rpc.method("explorer_latestBlocks")
    def latest_blocks(limit: int = DEFAULT_LIST_LIMIT) -> list[dict]:
        limit = _parse_limit(limit)
        return [record.to_json() for record in orchestrator.latest_blocks(limit)]

    @rpc.method("explorer_getBlock")
    def get_block(header_hash: str) -> dict | None:
        record = orchestrator.get_block(normalize_header_hash(header_hash))
        return record.to_json() if record is not None else None

    @rpc.method("explorer_latestReports")
    def latest_reports(limit: int = DEFAULT_LIST_LIMIT) -> list[dict]:
        return orchestrator.latest_reports(_parse_limit(limit))

    @rpc.method("explorer_latestExtrinsics")
    def latest_extrinsics(limit: int = DEFAULT_LIST_LIMIT) -> list[dict]:
        return orchestrator.latest_extrinsics(_parse_limit(limit))

    @rpc.method("explorer_status")
    def status() -> dict:
        result = orchestrator.status()
        result["knownEndpoints"] = registry.list_known()
        return result

    @rpc.method("explorer_knownEndpoints")
    def known_endpoints() -> dict:
        return {"active": registry.active, "known": registry.list_known()}

    @rpc.method("explorer_setEndpoint")
    async def set_endpoint(url: str) -> dict:
        await registry.set_active(url)
        logger.info("Endpoint switched to %s via API", registry.active)
        return orchestrator.status()

    @rpc.method("explorer_forgetEndpoint")
    def forget_endpoint(url: str) -> bool:
        return registry.forget(url)

    @rpc.method("explorer_retry")
    async def retry() -> dict:
        await orchestrator.retry()
        return orchestrator.status()
