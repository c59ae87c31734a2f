"""
Error taxonomy for the sync core.

Every error raised by the transport, protocol, store and orchestrator derives
from SyncError. Where a builtin category exists (connection, timeout, value)
the error also derives from it so callers can catch either.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all sync core errors."""


class TransportError(SyncError, ConnectionError):
    """The endpoint could not be reached or the connection was lost."""


class NotConnectedError(TransportError):
    """A send was attempted while no connection is open."""


class RPCTimeoutError(SyncError, TimeoutError):
    """No response arrived for a call within its window."""


class RPCError(SyncError):
    """The node answered a call with an error payload."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def __repr__(self) -> str:
        return f"RPCError(code={self.code}, message={self.message!r})"


class StoreError(SyncError):
    """A persistence operation failed; the record is not yet persisted."""


class CallCancelled(SyncError):
    """A pending call was invalidated by an endpoint switch or shutdown."""


class InvalidEndpointError(SyncError, ValueError):
    """An endpoint URL was rejected."""


class InvalidRecordError(SyncError, ValueError):
    """A notification or stored document could not be turned into a record."""
