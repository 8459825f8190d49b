"""Tests for the monitoring cycle orchestrator and its periodic task."""
import asyncio

import pytest

from ipwhat.config import get_settings
from ipwhat.db import EventRepository, HistoryRepository, KeyValueRepository
from ipwhat.metrics import get_metrics
from ipwhat.models import AddressFamily, ErrorKind, MonitorSettings
from ipwhat.services.change_detector import EventLog
from ipwhat.services.history import HistoryStore
from ipwhat.services.monitor import ConnectivityMonitor, MonitorTask
from ipwhat.services.notifier import Notifier
from ipwhat.services.settings import SettingsService

from fakes import DOWN, UP, FakeDns, FakeProber, FakePublicIP


def build_monitor(
    db, clock, prober=None, public_ip=None, dns_check=None, notifier=None,
    event_log=None, status_repo=None,
):
    return ConnectivityMonitor(
        settings_service=SettingsService(KeyValueRepository(db)),
        prober=prober or FakeProber(),
        public_ip=public_ip or FakePublicIP(),
        dns_check=dns_check or FakeDns(),
        history=HistoryStore(repo=HistoryRepository(db), clock=clock),
        event_log=event_log if event_log is not None else EventLog(repo=EventRepository(db)),
        notifier=notifier or Notifier(enabled=True),
        status_repo=status_repo or KeyValueRepository(db),
        clock=clock,
    )


class TestCycle:
    async def test_cycle_publishes_status_and_history(self, db, clock):
        monitor = build_monitor(db, clock)
        status = await monitor.check_now()

        assert status.cycle_count == 1
        assert status.last_check == clock.now
        assert status.ipv4.connected is True
        assert status.ipv4.latency_ms == 20
        assert status.public_ipv4 == "203.0.113.5"
        assert status.public_ipv6 == "2001:db8::5"
        assert status.dns.resolved is True
        assert monitor.get_status() == status

        history = monitor.get_history()
        assert len(history["entries"]) == 1
        assert history["entries"][0].ipv4 is True
        assert history["events"] == []

    async def test_transition_raises_one_event_and_alert(self, db, clock):
        notifier = Notifier(enabled=True)
        monitor = build_monitor(db, clock, prober=FakeProber(ipv4=(UP, DOWN)), notifier=notifier)

        await monitor.check_now()
        clock.advance(60_000)
        status = await monitor.check_now()

        assert status.ipv4.connected is False
        assert status.ipv4.error_kind is ErrorKind.TIMEOUT
        events = monitor.get_history()["events"]
        assert [(e.family, e.direction.value) for e in events] == [(AddressFamily.IPV4, "down")]
        alerts = notifier.get_history()
        assert len(alerts) == 1
        assert alerts[0].severity.value == "down"

    async def test_concurrent_checks_coalesce(self, db, clock):
        gate = asyncio.Event()
        prober = FakeProber(gate=gate)
        monitor = build_monitor(db, clock, prober=prober)

        first = asyncio.create_task(monitor.check_now())
        await prober.started.wait()
        second = asyncio.create_task(monitor.check_now())
        await asyncio.sleep(0)
        gate.set()

        a, b = await asyncio.gather(first, second)
        assert a is b
        assert prober.calls[AddressFamily.IPV4] == 1
        assert monitor.get_status().cycle_count == 1

    async def test_cancelled_caller_does_not_cancel_cycle(self, db, clock):
        gate = asyncio.Event()
        prober = FakeProber(gate=gate)
        monitor = build_monitor(db, clock, prober=prober)

        caller = asyncio.create_task(monitor.check_now())
        await prober.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        status = await monitor.check_now()
        assert status.cycle_count == 1

    async def test_slow_enrichment_is_bounded(self, db, clock):
        monitor = build_monitor(db, clock, dns_check=FakeDns(delay=5))
        await monitor.settings_service.update({"timeout_ms": 50})

        status = await monitor.check_now()
        assert status.ipv4.connected is True
        assert status.dns.resolved is None
        assert status.dns.error_kind is ErrorKind.ENRICHMENT_UNAVAILABLE

    async def test_failing_enrichment_becomes_null(self, db, clock):
        monitor = build_monitor(db, clock, public_ip=FakePublicIP(error=RuntimeError("boom")))
        status = await monitor.check_now()
        assert status.public_ipv4 is None
        assert status.public_ipv6 is None
        assert status.ipv6.connected is True

    async def test_blank_target_is_not_probed(self, db, clock):
        prober = FakeProber()
        monitor = build_monitor(db, clock, prober=prober)
        await monitor.settings_service.update({"ipv6_target": ""})

        status = await monitor.check_now()
        assert status.ipv6 is None
        assert status.public_ipv6 is None
        assert prober.calls[AddressFamily.IPV6] == 0
        assert monitor.get_history()["entries"][0].ipv6 is None

    async def test_disabled_enrichment_is_skipped(self, db, clock, monkeypatch):
        monkeypatch.setenv("ENRICHMENT_PUBLIC_IP_ENABLED", "false")
        monkeypatch.setenv("ENRICHMENT_DNS_CHECK_ENABLED", "false")
        get_settings.cache_clear()

        status = await build_monitor(db, clock).check_now()
        assert status.public_ipv4 is None
        assert status.dns is None

    async def test_history_since(self, db, clock):
        monitor = build_monitor(db, clock)
        await monitor.check_now()
        clock.advance(1000)
        cutoff = clock.now
        await monitor.check_now()

        entries = monitor.get_history(since=cutoff)["entries"]
        assert [e.timestamp for e in entries] == [cutoff]

    async def test_metrics_recorded(self, db, clock):
        monitor = build_monitor(db, clock, prober=FakeProber(ipv6=(DOWN,)))
        await monitor.check_now()

        metrics = get_metrics()
        assert metrics.get_gauge("ipwhat_connected", {"family": "ipv4"}) == 1
        assert metrics.get_gauge("ipwhat_connected", {"family": "ipv6"}) == 0
        assert metrics.get_gauge("ipwhat_packet_loss_percent", {"family": "ipv6"}) == 100
        assert metrics.get_counter("ipwhat_cycles_total") == 1


class FlakyEventRepository(EventRepository):
    """Event table whose writes can be made to fail or to wait."""

    def __init__(self, db, gate: asyncio.Event | None = None):
        super().__init__(db)
        self.fail = False
        self.gate = gate
        self.entered = asyncio.Event()

    async def append(self, events, max_events):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("disk I/O error")
        await super().append(events, max_events)


class BrokenStatusRepository(KeyValueRepository):
    async def set(self, namespace, values):
        raise RuntimeError("database is locked")


class TestPublishing:
    def view(self, monitor):
        return monitor.get_status().cycle_count, len(monitor.get_history()["entries"])

    async def test_readers_see_previous_state_while_probing(self, db, clock):
        gate = asyncio.Event()
        prober = FakeProber(gate=gate)
        monitor = build_monitor(db, clock, prober=prober)

        cycle = asyncio.create_task(monitor.check_now())
        await prober.started.wait()
        assert self.view(monitor) == (0, 0)
        assert monitor.get_history()["events"] == []

        gate.set()
        await cycle
        assert self.view(monitor) == (1, 1)

    async def test_readers_see_previous_state_while_writing(self, db, clock):
        gate = asyncio.Event()
        events_repo = FlakyEventRepository(db, gate=gate)
        monitor = build_monitor(
            db, clock, prober=FakeProber(ipv4=(UP, DOWN)), event_log=EventLog(repo=events_repo)
        )
        gate.set()
        await monitor.check_now()
        gate.clear()
        events_repo.entered.clear()

        clock.advance(1000)
        cycle = asyncio.create_task(monitor.check_now())
        await events_repo.entered.wait()
        # History row is already stored; the snapshot has not moved yet
        assert len(monitor.history) == 2
        assert self.view(monitor) == (1, 1)
        assert monitor.snapshot.verdicts.ipv4 is True

        gate.set()
        await cycle
        assert self.view(monitor) == (2, 2)
        assert monitor.snapshot.verdicts.ipv4 is False

    async def test_event_write_failure_still_publishes_cycle(self, db, clock):
        notifier = Notifier(enabled=True)
        events_repo = FlakyEventRepository(db)
        monitor = build_monitor(
            db, clock,
            prober=FakeProber(ipv4=(UP, DOWN)),
            notifier=notifier,
            event_log=EventLog(repo=events_repo),
        )
        await monitor.check_now()

        events_repo.fail = True
        clock.advance(1000)
        status = await monitor.check_now()

        assert status.cycle_count == 2
        assert status.ipv4.connected is False
        snapshot = monitor.snapshot
        assert len(snapshot.history) == len(monitor.history) == 2
        assert snapshot.verdicts.ipv4 is False
        assert [e.message for e in snapshot.events] == ["IPv4 disconnected"]
        assert [a.severity.value for a in notifier.get_history()] == ["down"]

    async def test_status_write_failure_does_not_fail_cycle(self, db, clock):
        monitor = build_monitor(db, clock, status_repo=BrokenStatusRepository(db))

        status = await monitor.check_now()
        assert status.cycle_count == 1
        assert monitor.get_status() == status
        assert monitor.get_stats()["failed_cycles"] == 0

    async def test_settings_reread_every_cycle(self, db, clock):
        prober = FakeProber()
        monitor = build_monitor(db, clock, prober=prober)
        await monitor.settings_service.update({"timeout_ms": 4000})
        await monitor.check_now()
        assert prober.calls[AddressFamily.IPV6] == 1

        await monitor.settings_service.update({"ipv6_target": "", "timeout_ms": 1500})
        clock.advance(1000)
        status = await monitor.check_now()

        assert prober.calls[AddressFamily.IPV6] == 1
        assert prober.timeouts == [4000, 4000, 1500]
        assert status.ipv6 is None
        assert monitor.get_history()["entries"][-1].ipv6 is None

    def test_injected_empty_stores_are_used(self, db, clock):
        history = HistoryStore(repo=HistoryRepository(db), clock=clock)
        event_log = EventLog(repo=EventRepository(db))
        monitor = ConnectivityMonitor(
            prober=FakeProber(),
            public_ip=FakePublicIP(),
            dns_check=FakeDns(),
            history=history,
            event_log=event_log,
            clock=clock,
        )
        assert monitor.history is history
        assert monitor.event_log is event_log


class TestClearAndRestore:
    async def test_clear_keeps_status_and_baseline(self, db, clock):
        monitor = build_monitor(db, clock, prober=FakeProber(ipv4=(UP, DOWN, UP)))
        await monitor.check_now()
        clock.advance(1000)
        await monitor.check_now()

        await monitor.clear_history()
        history = monitor.get_history()
        assert history == {"entries": [], "events": []}
        assert monitor.get_status().cycle_count == 2
        assert monitor.notifier.get_history() == []

        clock.advance(1000)
        await monitor.check_now()
        events = monitor.get_history()["events"]
        assert [e.message for e in events] == ["IPv4 connected"]

    async def test_transition_detected_across_restart(self, db, clock):
        first = build_monitor(db, clock)
        await first.check_now()

        clock.advance(1000)
        second = build_monitor(db, clock, prober=FakeProber(ipv6=(DOWN,)))
        await second.load()
        assert second.get_status().cycle_count == 1
        assert len(second.get_history()["entries"]) == 1

        status = await second.check_now()
        assert status.cycle_count == 2
        assert [e.message for e in second.get_history()["events"]] == ["IPv6 disconnected"]


class TestMonitorTask:
    def make_settings(self, interval: int) -> MonitorSettings:
        return MonitorSettings(
            ipv4_target="1.1.1.1",
            ipv6_target="::1",
            timeout_ms=1000,
            check_interval_seconds=interval,
            dns_fqdn="example.org",
        )

    def test_fixed_tick_by_default(self, db, clock):
        monitor = build_monitor(db, clock)
        monitor.last_settings = self.make_settings(30)
        assert MonitorTask(monitor).next_interval() == 60

    def test_follows_check_interval_when_enabled(self, db, clock, monkeypatch):
        monkeypatch.setenv("SCHEDULE_FOLLOW_CHECK_INTERVAL", "true")
        get_settings.cache_clear()
        monitor = build_monitor(db, clock)
        task = MonitorTask(monitor)

        monitor.last_settings = self.make_settings(30)
        assert task.next_interval() == 30
        monitor.last_settings = self.make_settings(1)
        assert task.next_interval() == 5

    async def test_loop_runs_on_start_and_stops(self, db, clock):
        monitor = build_monitor(db, clock)
        await monitor.start()
        try:
            for _ in range(100):
                if monitor.get_status().cycle_count:
                    break
                await asyncio.sleep(0.01)
            assert monitor.is_running()
            assert monitor.get_status().cycle_count == 1
        finally:
            await monitor.stop()
        assert not monitor.is_running()

    async def test_wake_runs_extra_cycle(self, db, clock):
        monitor = build_monitor(db, clock)
        await monitor.start()
        try:
            for _ in range(100):
                if monitor.get_status().cycle_count:
                    break
                await asyncio.sleep(0.01)
            monitor.request_cycle()
            for _ in range(100):
                if monitor.get_status().cycle_count >= 2:
                    break
                await asyncio.sleep(0.01)
            assert monitor.get_status().cycle_count == 2
        finally:
            await monitor.stop()
