"""
Store interface: abstract storage layer for the explorer.

Defines the contract for block record persistence (upsert-with-merge keyed
by header hash, hash lookup, full scan) and for the persisted set of known
node endpoints.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

from jamexplorer.common.types import BlockRecord, normalize_header_hash, sort_records


class KeyedLocks:
    """One lock per key, created on demand.

    Serializes work on the same key while letting different keys proceed
    independently.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class Store(ABC):
    """Abstract storage interface.

    Implementations can be in-memory (testing) or SQLite-backed.
    """

    def __init__(self) -> None:
        self._key_locks = KeyedLocks()

    # -----------------------------------------------------------------
    # Block records
    # -----------------------------------------------------------------

    def upsert(self, record: BlockRecord) -> BlockRecord:
        """Insert the record or merge it into the stored one.

        Returns the record as stored. Raises StoreError if the write fails,
        in which case nothing was persisted for this call.
        """
        with self._key_locks.hold(record.header_hash):
            current = self._read(record.header_hash)
            stored = current.merged(record) if current is not None else record
            self._write(stored, insert=current is None)
            return stored

    def get_by_hash(self, header_hash: str) -> Optional[BlockRecord]:
        """Get a record by header hash, or None if not found."""
        return self._read(normalize_header_hash(header_hash))

    @abstractmethod
    def list_all(self) -> list[BlockRecord]:
        """Every stored record, unordered."""
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    def list_sorted(self, limit: Optional[int] = None) -> list[BlockRecord]:
        """Records newest first; see sort_records for the ordering rule."""
        records = sort_records(self.list_all())
        return records if limit is None else records[:limit]

    @abstractmethod
    def _read(self, header_hash: str) -> Optional[BlockRecord]:
        """Load one record by its normalized hash."""
        ...

    @abstractmethod
    def _write(self, record: BlockRecord, insert: bool) -> None:
        """Persist a whole merged record atomically."""
        ...

    # -----------------------------------------------------------------
    # Known endpoints
    # -----------------------------------------------------------------

    @abstractmethod
    def get_known_endpoints(self) -> list[str]:
        """Known endpoint URLs in insertion order."""
        ...

    @abstractmethod
    def add_known_endpoint(self, url: str) -> bool:
        """Add an endpoint; returns False if it was already known."""
        ...

    @abstractmethod
    def remove_known_endpoint(self, url: str) -> bool:
        ...

    @abstractmethod
    def get_active_endpoint(self) -> Optional[str]:
        ...

    @abstractmethod
    def set_active_endpoint(self, url: str) -> None:
        ...

    def close(self) -> None:
        pass
