"""DuckDB record database for tallycache.

Holds the record backend's payloads (``cache_records``), the old flat key/value
store (``flat_storage``) and small persistent settings (``cache_meta``).
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import duckdb

from ..errors import StorageError, storage_error_from_os
from ..models.cache import CacheEntry, CacheType, DateRange
from .schema import CacheSchema

logger = logging.getLogger(__name__)


class RecordStore:
    """Thread-safe access to the DuckDB record database.

    Calls arrive from worker threads (``asyncio.to_thread``), so every use of
    the shared connection goes through one re-entrant lock.
    """

    def __init__(self, db_path: str, read_only: bool = False):
        """Initialize record store.

        Args:
            db_path: Path to DuckDB database file, or ":memory:"
            read_only: Open database in read-only mode
        """
        self._in_memory = db_path == ":memory:"
        self.db_path = Path(db_path) if self._in_memory else Path(db_path).expanduser()
        self._read_only = read_only
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection.

        Returns:
            DuckDB connection
        """
        if self._conn is None:
            try:
                if not self._in_memory:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = duckdb.connect(str(self.db_path), read_only=self._read_only)
            except OSError as e:
                raise storage_error_from_os(e)
            except duckdb.IOException as e:
                raise StorageError(f"Cannot open record database {self.db_path}: {e}")
            if not self._read_only:
                if CacheSchema.needs_migration(self._conn):
                    CacheSchema.migrate(self._conn)
        return self._conn

    @contextmanager
    def _connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            yield self._get_connection()

    @contextmanager
    def _transaction(self, key: Optional[str] = None) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                yield conn
            except duckdb.IOException as e:
                conn.rollback()
                raise StorageError(f"Record database write failed: {e}", key)
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "RecordStore":
        with self._lock:
            self._get_connection()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def location(self) -> str:
        return str(self.db_path)

    def size_bytes(self) -> int:
        if self._in_memory or not self.db_path.exists():
            return 0
        return self.db_path.stat().st_size

    # === Cache records ===

    def put_record(self, entry: CacheEntry, payload: bytes) -> None:
        """Insert or replace one payload and its metadata in a single transaction."""
        range_start = entry.date_range.start_date if entry.date_range else None
        range_end = entry.date_range.end_date if entry.date_range else None
        with self._transaction(entry.cache_key) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_records
                (cache_key, payload, entry_type, size_bytes, created_at, range_start, range_end)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    entry.cache_key,
                    payload,
                    entry.type.value,
                    entry.size_bytes,
                    entry.created_at,
                    range_start,
                    range_end,
                ],
            )

    def get_record(self, key: str) -> Optional[bytes]:
        with self._connection() as conn:
            result = conn.execute(
                "SELECT payload FROM cache_records WHERE cache_key = ?", [key]
            ).fetchone()
        return bytes(result[0]) if result else None

    def delete_record(self, key: str) -> bool:
        with self._transaction(key) as conn:
            result = conn.execute(
                "DELETE FROM cache_records WHERE cache_key = ? RETURNING cache_key", [key]
            ).fetchall()
        return bool(result)

    def list_records(self) -> Dict[str, CacheEntry]:
        """Metadata of every stored record, without loading payloads."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT cache_key, entry_type, size_bytes, created_at, range_start, range_end
                FROM cache_records
                """
            ).fetchall()

        entries = {}
        for key, entry_type, size, created_at, range_start, range_end in rows:
            date_range = None
            if range_start and range_end:
                date_range = DateRange(start_date=range_start, end_date=range_end)
            entries[key] = CacheEntry(
                cache_key=key,
                type=CacheType(entry_type),
                size_bytes=size or 0,
                created_at=created_at or datetime.now(),
                date_range=date_range,
                backend="records",
            )
        return entries

    def clear_records(self) -> None:
        with self._transaction() as conn:
            CacheSchema.clear_records(conn)
        logger.debug("Cleared record tables in %s", self.location)

    # === Flat storage (legacy) ===

    def flat_get(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            result = conn.execute(
                "SELECT value FROM flat_storage WHERE key = ?", [key]
            ).fetchone()
        return result[0] if result else None

    def flat_set(self, key: str, value: str) -> None:
        """Write a flat value. Only used to seed old-format data."""
        with self._transaction(key) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO flat_storage (key, value) VALUES (?, ?)",
                [key, value],
            )

    def flat_delete(self, keys: List[str]) -> int:
        if not keys:
            return 0
        with self._transaction() as conn:
            removed = 0
            for key in keys:
                removed += len(
                    conn.execute(
                        "DELETE FROM flat_storage WHERE key = ? RETURNING key", [key]
                    ).fetchall()
                )
        return removed

    def flat_keys(self) -> List[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT key FROM flat_storage ORDER BY key").fetchall()
        return [row[0] for row in rows]

    # === Metadata ===

    def meta_get(self, key: str) -> Optional[str]:
        with self._connection() as conn:
            result = conn.execute(
                "SELECT value FROM cache_meta WHERE key = ?", [key]
            ).fetchone()
        return result[0] if result else None

    def meta_set(self, key: str, value: str) -> None:
        with self._transaction(key) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_meta (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                """,
                [key, value],
            )

    def meta_delete(self, key: str) -> None:
        with self._transaction(key) as conn:
            conn.execute("DELETE FROM cache_meta WHERE key = ?", [key])
