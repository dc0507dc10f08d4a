"""DuckDB schema of the tallycache record database.

Three tables:

- ``cache_records``: payloads and metadata for the record backend
- ``flat_storage``: values left by the old flat key/value store (read only)
- ``cache_meta``: schema version, sync watermarks and dismissed prompts
"""

from typing import Callable, Dict, List, Optional

import duckdb

VERSION_KEY = "schema_version"


class CacheSchema:
    """Creates and upgrades the record database schema."""

    SCHEMA_VERSION = 1

    TABLES: Dict[str, str] = {
        "cache_meta": """
            CREATE TABLE IF NOT EXISTS cache_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """,
        "cache_records": """
            CREATE TABLE IF NOT EXISTS cache_records (
                cache_key TEXT PRIMARY KEY,
                payload BLOB NOT NULL,
                entry_type TEXT NOT NULL,
                size_bytes BIGINT DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                range_start DATE,
                range_end DATE
            )
        """,
        "flat_storage": """
            CREATE TABLE IF NOT EXISTS flat_storage (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """,
    }

    INDEXES: List[str] = [
        "CREATE INDEX IF NOT EXISTS idx_records_type ON cache_records(entry_type)",
        "CREATE INDEX IF NOT EXISTS idx_records_created ON cache_records(created_at)",
    ]

    @classmethod
    def create_schema(cls, conn: duckdb.DuckDBPyConnection) -> None:
        """Create every table and index at the current version."""
        for ddl in cls.TABLES.values():
            conn.execute(ddl)
        for ddl in cls.INDEXES:
            conn.execute(ddl)
        cls._set_version(conn, cls.SCHEMA_VERSION)

    @classmethod
    def _set_version(cls, conn: duckdb.DuckDBPyConnection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO cache_meta (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
            [VERSION_KEY, str(version)],
        )

    @classmethod
    def get_schema_version(cls, conn: duckdb.DuckDBPyConnection) -> Optional[int]:
        """Version recorded in ``cache_meta``, or None for an empty database."""
        has_meta = conn.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = 'cache_meta'"
        ).fetchone()[0]
        if not has_meta:
            return None
        row = conn.execute("SELECT value FROM cache_meta WHERE key = ?", [VERSION_KEY]).fetchone()
        return int(row[0]) if row else None

    @classmethod
    def needs_migration(cls, conn: duckdb.DuckDBPyConnection) -> bool:
        version = cls.get_schema_version(conn)
        return version is None or version < cls.SCHEMA_VERSION

    @classmethod
    def _migrations(cls) -> Dict[int, Callable[[duckdb.DuckDBPyConnection], None]]:
        """Upgrade steps keyed by the version they produce."""
        return {}

    @classmethod
    def migrate(cls, conn: duckdb.DuckDBPyConnection) -> None:
        """Bring the database to ``SCHEMA_VERSION``.

        An empty database gets the full schema; an older one runs each
        upgrade step in order.

        Args:
            conn: DuckDB connection
        """
        version = cls.get_schema_version(conn)
        if version is None:
            cls.create_schema(conn)
            return

        steps = cls._migrations()
        for target in range(version + 1, cls.SCHEMA_VERSION + 1):
            step = steps.get(target)
            if step is not None:
                step(conn)
            cls._set_version(conn, target)

    @classmethod
    def clear_records(cls, conn: duckdb.DuckDBPyConnection) -> None:
        """Delete every cached payload and legacy value.

        ``cache_meta`` is kept: it holds the schema version, watermarks and
        dismissed interruption prompts.
        """
        conn.execute("DELETE FROM cache_records")
        conn.execute("DELETE FROM flat_storage")
