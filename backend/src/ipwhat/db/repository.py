"""Repository classes for data access."""

import json
from typing import Any

import structlog

from ..models import AddressFamily, ConnectivityEvent, Direction, HistoryEntry, now_ms
from .connection import DatabaseConnection, get_db

log = structlog.get_logger()

SETTINGS_NAMESPACE = "settings"
STATUS_NAMESPACE = "status"

HISTORY_COLUMNS = (
    "timestamp",
    "ipv4",
    "ipv6",
    "ipv4_latency_ms",
    "ipv6_latency_ms",
    "ipv4_jitter",
    "ipv6_jitter",
    "ipv4_packet_loss",
    "ipv6_packet_loss",
)


def _bool_or_none(value: Any) -> bool | None:
    return None if value is None else bool(value)


class KeyValueRepository:
    """Namespaced JSON key-value store with get-with-defaults and merge-set."""

    def __init__(self, db: DatabaseConnection | None = None):
        self.db = db or get_db()

    async def get(self, namespace: str, defaults: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return stored values layered over ``defaults``.

        Unreadable values are skipped so the default shows through.
        """
        values = dict(defaults or {})

        async with self.db.connection() as db:
            cursor = await db.execute(
                "SELECT key, value FROM kv_store WHERE namespace = ?", (namespace,)
            )
            rows = await cursor.fetchall()

        for row in rows:
            try:
                values[row["key"]] = json.loads(row["value"])
            except json.JSONDecodeError as e:
                log.warning("kv_value_decode_failed", namespace=namespace, key=row["key"], error=str(e))
        return values

    async def set(self, namespace: str, values: dict[str, Any]) -> None:
        """Merge ``values`` into the namespace; other keys are untouched."""
        if not values:
            return

        updated_at = now_ms()
        async with self.db.connection() as db:
            await db.executemany(
                """
                INSERT INTO kv_store (namespace, key, value, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                [
                    (namespace, key, json.dumps(value, default=str), updated_at)
                    for key, value in values.items()
                ],
            )
            await db.commit()


class HistoryRepository:
    """Persistence for per-cycle history entries."""

    def __init__(self, db: DatabaseConnection | None = None):
        self.db = db or get_db()

    async def append(self, entry: HistoryEntry, prune_before: int) -> int:
        """Insert ``entry`` and drop rows at or before ``prune_before``.

        Both happen in one transaction. Returns the number of pruned rows.
        """
        row = entry.model_dump()
        async with self.db.connection() as db:
            await db.execute(
                f"""
                INSERT INTO connectivity_history ({", ".join(HISTORY_COLUMNS)})
                VALUES ({", ".join("?" for _ in HISTORY_COLUMNS)})
                """,
                tuple(row[column] for column in HISTORY_COLUMNS),
            )
            cursor = await db.execute(
                "DELETE FROM connectivity_history WHERE timestamp <= ?", (prune_before,)
            )
            pruned = cursor.rowcount
            await db.commit()

        if pruned > 0:
            log.debug("history_pruned", rows=pruned)
        return pruned

    async def load(self, after: int | None = None) -> list[HistoryEntry]:
        """Load entries in insertion order, optionally newer than ``after``."""
        query = f"SELECT {', '.join(HISTORY_COLUMNS)} FROM connectivity_history"
        params: tuple = ()
        if after is not None:
            query += " WHERE timestamp > ?"
            params = (after,)
        query += " ORDER BY id ASC"

        async with self.db.connection() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()

        entries = []
        for row in rows:
            data = dict(row)
            data["ipv4"] = _bool_or_none(data["ipv4"])
            data["ipv6"] = _bool_or_none(data["ipv6"])
            entries.append(HistoryEntry(**data))
        return entries

    async def clear(self) -> int:
        async with self.db.connection() as db:
            cursor = await db.execute("DELETE FROM connectivity_history")
            await db.commit()
            return cursor.rowcount


class EventRepository:
    """Persistence for the bounded connectivity event log."""

    def __init__(self, db: DatabaseConnection | None = None):
        self.db = db or get_db()

    async def append(self, events: list[ConnectivityEvent], max_events: int) -> None:
        """Insert ``events`` and keep only the newest ``max_events`` rows."""
        if not events:
            return

        async with self.db.connection() as db:
            await db.executemany(
                """
                INSERT INTO connectivity_events (timestamp, family, direction, message)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (e.timestamp, e.family.value, e.direction.value, e.message)
                    for e in events
                ],
            )
            await db.execute(
                """
                DELETE FROM connectivity_events WHERE id NOT IN (
                    SELECT id FROM connectivity_events ORDER BY id DESC LIMIT ?
                )
                """,
                (max_events,),
            )
            await db.commit()

    async def load(self) -> list[ConnectivityEvent]:
        """Load events oldest first."""
        async with self.db.connection() as db:
            cursor = await db.execute(
                "SELECT timestamp, family, direction, message FROM connectivity_events ORDER BY id ASC"
            )
            rows = await cursor.fetchall()

        return [
            ConnectivityEvent(
                timestamp=row["timestamp"],
                family=AddressFamily(row["family"]),
                direction=Direction(row["direction"]),
                message=row["message"],
            )
            for row in rows
        ]

    async def clear(self) -> int:
        async with self.db.connection() as db:
            cursor = await db.execute("DELETE FROM connectivity_events")
            await db.commit()
            return cursor.rowcount
