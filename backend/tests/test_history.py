"""Tests for the history store, event log and repositories."""
import pytest

from ipwhat.db import EventRepository, HistoryRepository, KeyValueRepository
from ipwhat.models import AddressFamily, ConnectivityEvent, HistoryEntry
from ipwhat.services.change_detector import EventLog
from ipwhat.services.history import HOUR_MS, HistoryOrderError, HistoryStore


def store_for(db, clock, **kwargs) -> HistoryStore:
    return HistoryStore(repo=HistoryRepository(db), clock=clock, **kwargs)


class TestHistoryStore:
    async def test_append_computes_statistics(self, db, clock):
        store = store_for(db, clock)
        stored = None
        for latency in [10, 12, 14, 16, 18]:
            clock.advance(1000)
            stored = await store.append(
                HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=latency, ipv6=False)
            )

        assert stored.ipv4_jitter == 2
        assert stored.ipv4_packet_loss == 0
        assert stored.ipv6_jitter is None
        assert stored.ipv6_packet_loss == 100
        assert store.latest() == stored

    async def test_first_entry_includes_itself(self, db, clock):
        store = store_for(db, clock)
        stored = await store.append(HistoryEntry(timestamp=clock.now, ipv4=False))
        assert stored.ipv4_packet_loss == 100
        assert stored.ipv6_packet_loss == 0

    async def test_out_of_order_append_rejected(self, db, clock):
        store = store_for(db, clock)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))
        with pytest.raises(HistoryOrderError):
            await store.append(HistoryEntry(timestamp=clock.now - 1, ipv4=True, ipv4_latency_ms=5))

    async def test_equal_timestamps_allowed(self, db, clock):
        store = store_for(db, clock)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=6))
        assert len(store) == 2

    async def test_prunes_entries_past_retention(self, db, clock):
        store = store_for(db, clock, retention_hours=1)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))
        clock.advance(HOUR_MS + 1)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=6))

        assert [e.timestamp for e in store.query()] == [clock.now]
        persisted = await HistoryRepository(db).load()
        assert [e.timestamp for e in persisted] == [clock.now]

    async def test_query_since_is_inclusive_and_repeatable(self, db, clock):
        store = store_for(db, clock)
        timestamps = []
        for _ in range(4):
            clock.advance(1000)
            timestamps.append(clock.now)
            await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))

        first = store.query(since=timestamps[1])
        second = store.query(since=timestamps[1])
        assert [e.timestamp for e in first] == timestamps[1:]
        assert first == second
        assert store.query(since=timestamps[-1] + 1) == ()

    async def test_load_restores_entries_inside_retention(self, db, clock):
        store = store_for(db, clock, retention_hours=1)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))
        clock.advance(1000)
        await store.append(HistoryEntry(timestamp=clock.now, ipv6=False))

        restored = store_for(db, clock, retention_hours=1)
        assert await restored.load() == 2
        assert restored.query() == store.query()
        assert restored.latest().ipv4 is None
        assert restored.latest().ipv6 is False

        clock.advance(HOUR_MS - 500)
        later = store_for(db, clock, retention_hours=1)
        assert await later.load() == 1

    async def test_clear(self, db, clock):
        store = store_for(db, clock)
        await store.append(HistoryEntry(timestamp=clock.now, ipv4=True, ipv4_latency_ms=5))
        await store.clear()
        assert len(store) == 0
        assert await HistoryRepository(db).load() == []


class TestEventLog:
    async def test_keeps_newest_events(self, db):
        log = EventLog(repo=EventRepository(db), max_events=3)
        for i in range(5):
            await log.append([ConnectivityEvent.transition(AddressFamily.IPV4, i % 2 == 0, i)])

        assert [e.timestamp for e in log.events()] == [2, 3, 4]
        persisted = await EventRepository(db).load()
        assert [e.timestamp for e in persisted] == [2, 3, 4]

    async def test_load_and_clear(self, db):
        first = EventLog(repo=EventRepository(db), max_events=10)
        await first.append([ConnectivityEvent.transition(AddressFamily.IPV6, False, 7)])

        second = EventLog(repo=EventRepository(db), max_events=10)
        assert await second.load() == 1
        assert second.events()[0].message == "IPv6 disconnected"

        await second.clear()
        assert len(second) == 0
        assert await EventRepository(db).load() == []


class TestKeyValueRepository:
    async def test_get_with_defaults_and_merge_set(self, db):
        repo = KeyValueRepository(db)
        assert await repo.get("settings", {"a": 1, "b": 2}) == {"a": 1, "b": 2}

        await repo.set("settings", {"b": 3})
        await repo.set("settings", {"c": [1, 2]})
        assert await repo.get("settings", {"a": 1, "b": 2}) == {"a": 1, "b": 3, "c": [1, 2]}

    async def test_namespaces_are_separate(self, db):
        repo = KeyValueRepository(db)
        await repo.set("status", {"cycle_count": 4})
        assert await repo.get("settings") == {}
        assert await repo.get("status") == {"cycle_count": 4}
