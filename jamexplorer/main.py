"""
jam-explorer: live chain-data sync for a JAM network explorer.

Entry point for the sync node. Initializes all subsystems:
  1. Parse CLI arguments and load config
  2. Open the record store
  3. Start the explorer JSON-RPC server
  4. Connect to the active node endpoint and begin syncing
  5. Handle graceful shutdown
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from jamexplorer.common.config import DEFAULT_WS_URL, SyncConfig, load_config
from jamexplorer.common.errors import InvalidEndpointError
from jamexplorer.rpc.explorer_api import register_explorer_api
from jamexplorer.rpc.server import RPCServer
from jamexplorer.storage.sqlite_backend import SQLiteBackend
from jamexplorer.sync.endpoints import EndpointRegistry, validate_endpoint
from jamexplorer.sync.orchestrator import SyncOrchestrator


logger = logging.getLogger("jamexplorer")


# ---------------------------------------------------------------------------
# Node class
# ---------------------------------------------------------------------------

class ExplorerNode:
    """Sync node coordinating store, sync and the explorer API."""

    def __init__(
        self,
        config: SyncConfig,
        db_path: str = "explorer.db",
        rpc_host: str = "127.0.0.1",
        rpc_port: int = 8550,
        endpoint: Optional[str] = None,
    ) -> None:
        self.config = config
        self.rpc_host = rpc_host
        self.rpc_port = rpc_port

        # Initialize storage
        self.store = SQLiteBackend(db_path)

        # Sync engine and endpoint registry
        self.orchestrator = SyncOrchestrator(self.store, config)
        self.registry = EndpointRegistry(
            self.store, self.orchestrator, default_url=config.default_endpoint
        )
        if endpoint is not None:
            # An explicit endpoint wins over the last used one
            self.store.add_known_endpoint(endpoint)
            self.store.set_active_endpoint(endpoint)

        # RPC server
        self.rpc = RPCServer()
        register_explorer_api(self.rpc, self.orchestrator, self.registry)
        self.rpc.set_metrics_provider(self.orchestrator.metrics)

        self._rpc_server: Optional[uvicorn.Server] = None
        self._rpc_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start all node subsystems."""
        logger.info("Starting jam-explorer sync node")
        logger.info("  Store: %s (%d records)", self.store.db_path, self.store.count())
        logger.info("  Endpoint: %s", self.registry.active)
        logger.info("  RPC: %s:%d", self.rpc_host, self.rpc_port)

        # Start RPC server in background
        config = uvicorn.Config(
            self.rpc.app,
            host=self.rpc_host,
            port=self.rpc_port,
            log_level="warning",
            loop="asyncio",
        )
        self._rpc_server = uvicorn.Server(config)
        self._rpc_task = asyncio.create_task(self._rpc_server.serve())

        await self.registry.start()
        logger.info("Node started")

    async def stop(self) -> None:
        """Gracefully stop all subsystems."""
        logger.info("Shutting down...")
        await self.orchestrator.stop()

        if self._rpc_server is not None:
            self._rpc_server.should_exit = True
        if self._rpc_task is not None:
            await self._rpc_task

        self.store.close()
        logger.info("Node stopped")

    async def run_until_stopped(self) -> None:
        """Run until shutdown signal is received."""
        stop_event = asyncio.Event()

        def _signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

        await self.start()
        await stop_event.wait()
        await self.stop()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jam-explorer",
        description="Live chain-data sync for a JAM network explorer",
    )
    parser.add_argument(
        "--endpoint",
        type=str,
        default=None,
        help=f"Node WebSocket endpoint (default: last used, else {DEFAULT_WS_URL})",
    )
    parser.add_argument(
        "--db",
        type=str,
        default="explorer.db",
        help="Path to the SQLite record store (default: explorer.db)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON file with sync config overrides",
    )
    parser.add_argument(
        "--rpc-host",
        type=str,
        default="127.0.0.1",
        help="Explorer JSON-RPC listen host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--rpc-port",
        type=int,
        default=8550,
        help="Explorer JSON-RPC listen port (default: 8550)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    # Sync config
    config = SyncConfig()
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            logger.error("Config file not found: %s", args.config)
            sys.exit(1)
        try:
            config = load_config(config_path)
        except (ValueError, TypeError) as e:
            logger.error("Invalid config %s: %s", args.config, e)
            sys.exit(1)
        logger.info("Loaded config from %s", args.config)

    endpoint = None
    if args.endpoint:
        try:
            endpoint = validate_endpoint(args.endpoint)
        except InvalidEndpointError as e:
            logger.error("%s", e)
            sys.exit(1)

    node = ExplorerNode(
        config=config,
        db_path=args.db,
        rpc_host=args.rpc_host,
        rpc_port=args.rpc_port,
        endpoint=endpoint,
    )

    try:
        asyncio.run(node.run_until_stopped())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
