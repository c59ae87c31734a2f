"""
Sync configuration.

Defaults match a local JAM node; every value can be overridden from a JSON
config file or the command line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_WS_URL = "ws://localhost:9999/ws"

SUBSCRIBE_METHOD = "jam.Subscribe"
UNSUBSCRIBE_METHOD = "jam.Unsubscribe"
NEW_BLOCK_TOPIC = "jam.NewBlock"
GET_STATE_METHOD = "jam.GetState"

CONNECT_TIMEOUT = 5.0           # seconds
CALL_TIMEOUT = 10.0             # seconds
RECONNECT_INITIAL_DELAY = 1.0   # seconds
RECONNECT_MAX_DELAY = 30.0      # seconds
RECONNECT_MAX_ATTEMPTS = 10
PING_INTERVAL = 20.0            # seconds
PING_TIMEOUT = 20.0             # seconds
INBOUND_QUEUE_SIZE = 1024
NOTIFICATION_QUEUE_SIZE = 256
STATE_FETCH_ATTEMPTS = 2
STATE_FETCH_RETRY_DELAY = 0.5   # seconds
TICK_INTERVAL = 1.0             # seconds


@dataclass
class SyncConfig:
    default_endpoint: str = DEFAULT_WS_URL

    # Node RPC surface
    subscribe_method: str = SUBSCRIBE_METHOD
    unsubscribe_method: str = UNSUBSCRIBE_METHOD
    new_block_topic: str = NEW_BLOCK_TOPIC
    get_state_method: str = GET_STATE_METHOD

    # Transport
    connect_timeout: float = CONNECT_TIMEOUT
    ping_interval: float = PING_INTERVAL
    ping_timeout: float = PING_TIMEOUT
    inbound_queue_size: int = INBOUND_QUEUE_SIZE

    # Reconnection policy
    reconnect_initial_delay: float = RECONNECT_INITIAL_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    reconnect_max_attempts: int = RECONNECT_MAX_ATTEMPTS

    # Protocol / orchestrator
    call_timeout: float = CALL_TIMEOUT
    notification_queue_size: int = NOTIFICATION_QUEUE_SIZE
    state_fetch_attempts: int = STATE_FETCH_ATTEMPTS
    state_fetch_retry_delay: float = STATE_FETCH_RETRY_DELAY
    tick_interval: float = TICK_INTERVAL

    def __post_init__(self) -> None:
        if self.reconnect_max_attempts < 0:
            raise ValueError("reconnect_max_attempts must be >= 0")
        if self.reconnect_initial_delay <= 0 or self.reconnect_max_delay <= 0:
            raise ValueError("reconnect delays must be positive")
        if self.call_timeout <= 0 or self.connect_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        if self.state_fetch_attempts < 1:
            raise ValueError("state_fetch_attempts must be >= 1")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnection attempt `attempt` (0-based), capped."""
        return min(self.reconnect_initial_delay * (2 ** attempt), self.reconnect_max_delay)

    @classmethod
    def from_json(cls, data: dict) -> SyncConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)


def load_config(path: str | Path) -> SyncConfig:
    """Load a SyncConfig from a JSON file."""
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("Config file must contain a JSON object")
    return SyncConfig.from_json(data)
