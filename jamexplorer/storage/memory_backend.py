"""
In-memory storage backend.

Dict-based implementation of the Store interface for testing and development.
Records are deep-copied on the way in and out so callers never share state
with the store.
"""

from __future__ import annotations

import copy
import threading
from typing import Optional

from jamexplorer.common.types import BlockRecord
from jamexplorer.storage.store import Store


class MemoryBackend(Store):
    """In-memory storage backend using Python dicts."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, BlockRecord] = {}  # header_hash -> record
        self._endpoints: dict[str, None] = {}       # insertion-ordered set
        self._active: Optional[str] = None
        self._lock = threading.Lock()

    # -----------------------------------------------------------------
    # Block records
    # -----------------------------------------------------------------

    def _read(self, header_hash: str) -> Optional[BlockRecord]:
        with self._lock:
            record = self._records.get(header_hash)
            return copy.deepcopy(record) if record is not None else None

    def _write(self, record: BlockRecord, insert: bool) -> None:
        snapshot = copy.deepcopy(record)
        with self._lock:
            self._records[record.header_hash] = snapshot

    def list_all(self) -> list[BlockRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._records.values()]

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    # -----------------------------------------------------------------
    # Known endpoints
    # -----------------------------------------------------------------

    def get_known_endpoints(self) -> list[str]:
        with self._lock:
            return list(self._endpoints)

    def add_known_endpoint(self, url: str) -> bool:
        with self._lock:
            if url in self._endpoints:
                return False
            self._endpoints[url] = None
            return True

    def remove_known_endpoint(self, url: str) -> bool:
        with self._lock:
            if url not in self._endpoints:
                return False
            del self._endpoints[url]
            if self._active == url:
                self._active = None
            return True

    def get_active_endpoint(self) -> Optional[str]:
        with self._lock:
            return self._active

    def set_active_endpoint(self, url: str) -> None:
        with self._lock:
            self._active = url
