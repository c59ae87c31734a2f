"""SQLite-based persistent storage for block records and known endpoints."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from jamexplorer.common.errors import InvalidRecordError, StoreError
from jamexplorer.common.types import BlockRecord
from jamexplorer.storage.store import Store

_ACTIVE_ENDPOINT_KEY = "active_endpoint"


class SQLiteBackend(Store):
    """SQLite-based persistent storage for explorer data.

    Each block record is stored as one JSON document keyed by header hash,
    with its ordering timestamp mirrored into an indexed column.
    """

    def __init__(self, db_path: str = "explorer.db"):
        """
        Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file. Use ":memory:" for in-memory database.
        """
        super().__init__()
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.RLock()
        with self._guard():
            self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        """Serialize connection use and translate driver errors."""
        with self._conn_lock:
            try:
                yield self._get_conn()
            except sqlite3.Error as e:
                raise StoreError(f"SQLite error: {e}") from e

    def _init_db(self):
        """Initialize database tables."""
        conn = self._get_conn()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS blocks (
                header_hash TEXT PRIMARY KEY,
                created_at REAL,
                has_state INTEGER NOT NULL DEFAULT 0,
                record TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS endpoints (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT UNIQUE NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_blocks_created_at ON blocks(created_at)
        """)

        conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> BlockRecord:
        """Convert database row to BlockRecord."""
        try:
            return BlockRecord.from_json(json.loads(row["record"]))
        except (ValueError, InvalidRecordError) as e:
            raise StoreError(f"Corrupt record {row['header_hash']}: {e}") from e

    # -----------------------------------------------------------------
    # Block records
    # -----------------------------------------------------------------

    def _read(self, header_hash: str) -> Optional[BlockRecord]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT header_hash, record FROM blocks WHERE header_hash = ?",
                (header_hash,),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def _write(self, record: BlockRecord, insert: bool) -> None:
        try:
            document = json.dumps(record.to_json())
        except (TypeError, ValueError) as e:
            raise StoreError(f"Record {record.header_hash} is not serializable: {e}") from e

        with self._guard() as conn:
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO blocks (header_hash, created_at, has_state, record)
                    VALUES (?, ?, ?, ?)
                    """,
                    (record.header_hash, record.created_at, int(record.has_state), document),
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    def list_all(self) -> list[BlockRecord]:
        with self._guard() as conn:
            rows = conn.execute("SELECT header_hash, record FROM blocks").fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_sorted(self, limit: Optional[int] = None) -> list[BlockRecord]:
        query = """
            SELECT header_hash, record FROM blocks
            ORDER BY created_at IS NULL, created_at DESC, header_hash ASC
        """
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._guard() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._guard() as conn:
            return conn.execute("SELECT COUNT(*) FROM blocks").fetchone()[0]

    # -----------------------------------------------------------------
    # Known endpoints
    # -----------------------------------------------------------------

    def get_known_endpoints(self) -> list[str]:
        with self._guard() as conn:
            rows = conn.execute("SELECT url FROM endpoints ORDER BY id").fetchall()
        return [row["url"] for row in rows]

    def add_known_endpoint(self, url: str) -> bool:
        with self._guard() as conn:
            cursor = conn.execute("INSERT OR IGNORE INTO endpoints (url) VALUES (?)", (url,))
            conn.commit()
            return cursor.rowcount > 0

    def remove_known_endpoint(self, url: str) -> bool:
        with self._guard() as conn:
            cursor = conn.execute("DELETE FROM endpoints WHERE url = ?", (url,))
            conn.execute(
                "DELETE FROM meta WHERE key = ? AND value = ?",
                (_ACTIVE_ENDPOINT_KEY, url),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_active_endpoint(self) -> Optional[str]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = ?", (_ACTIVE_ENDPOINT_KEY,)
            ).fetchone()
        return row["value"] if row else None

    def set_active_endpoint(self, url: str) -> None:
        with self._guard() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                (_ACTIVE_ENDPOINT_KEY, url),
            )
            conn.commit()

    def close(self):
        """Close database connection."""
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
