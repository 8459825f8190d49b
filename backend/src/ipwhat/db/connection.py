"""SQLite storage for settings, status, history and events (aiosqlite)."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
import structlog

from ..config import get_settings

log = structlog.get_logger()

TABLES = ("kv_store", "connectivity_history", "connectivity_events")

# Idempotent; run on every start
SCHEMA = (
    # Namespaced JSON values ("settings" and "status")
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        namespace TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (namespace, key)
    )
    """,
    # One row per monitoring cycle; verdict columns are NULL when not probed
    """
    CREATE TABLE IF NOT EXISTS connectivity_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        ipv4 INTEGER,
        ipv6 INTEGER,
        ipv4_latency_ms INTEGER,
        ipv6_latency_ms INTEGER,
        ipv4_jitter INTEGER,
        ipv6_jitter INTEGER,
        ipv4_packet_loss INTEGER,
        ipv6_packet_loss INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS connectivity_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        family TEXT NOT NULL,
        direction TEXT NOT NULL,
        message TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_connectivity_history_timestamp ON connectivity_history(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_connectivity_events_timestamp ON connectivity_events(timestamp)",
)


class DatabaseConnection:
    """Opens a short-lived aiosqlite connection per unit of work.

    The schema is created lazily on first use; ``initialize`` may be called
    any number of times.
    """

    def __init__(self, db_path: Path | None = None, wal_mode: bool | None = None):
        database = get_settings().database
        self.db_path = Path(db_path or database.path)
        self.wal_mode = database.wal_mode if wal_mode is None else wal_mode
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._ready:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                if self.wal_mode:
                    await db.execute("PRAGMA journal_mode=WAL")
                    await db.execute("PRAGMA synchronous=NORMAL")
                for statement in SCHEMA:
                    await db.execute(statement)
                await db.commit()

            self._ready = True
            log.info("database_initialized", path=str(self.db_path), wal_mode=self.wal_mode)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield a connection with dict-style rows."""
        if not self._ready:
            await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def is_connected(self) -> bool:
        try:
            async with self.connection() as db:
                await db.execute("SELECT 1")
        except Exception as e:
            log.error("database_connection_check_failed", error=str(e))
            return False
        return True

    async def get_stats(self) -> dict:
        """Row counts per table, file size and the history time span."""
        stats: dict = {}
        async with self.connection() as db:
            for table in TABLES:
                async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                    (count,) = await cursor.fetchone()
                stats[f"{table}_count"] = count

            async with db.execute(
                "SELECT MIN(timestamp), MAX(timestamp) FROM connectivity_history"
            ) as cursor:
                oldest, newest = await cursor.fetchone()

        if oldest is not None:
            stats["oldest_entry"] = oldest
            stats["newest_entry"] = newest
        if self.db_path.exists():
            stats["file_size_bytes"] = self.db_path.stat().st_size
        return stats


# Global database instance
_db: DatabaseConnection | None = None


def get_db() -> DatabaseConnection:
    global _db
    if _db is None:
        _db = DatabaseConnection()
    return _db


def reset_db() -> None:
    """Forget the global instance so the next get_db() picks up new settings."""
    global _db
    _db = None
