"""Connectivity monitor orchestrator.

Runs one monitoring cycle at a time:
- probes both families and the optional enrichment checks concurrently
- appends a history entry and detects reachability transitions
- raises one aggregate alert per cycle with transitions
- publishes an immutable snapshot for readers
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from ..background.scheduler import PeriodicTask
from ..config import get_settings
from ..db.repository import STATUS_NAMESPACE, KeyValueRepository
from ..logging import new_cycle_id
from ..metrics import get_metrics
from ..models import (
    AddressFamily,
    ConnectivityEvent,
    DnsCheckResult,
    ErrorKind,
    FamilyStatus,
    HistoryEntry,
    MonitorSettings,
    ProbeResult,
    StatusSnapshot,
    VerdictState,
    now_ms,
)
from .change_detector import EventLog, detect_changes
from .enrichment import DnsResolutionCheck, PublicIPLookup
from .history import HistoryStore
from .notifier import Notifier
from .prober import ReachabilityProber
from .settings import SettingsService

log = structlog.get_logger()

T = TypeVar("T")

STATUS_KEY = "snapshot"
VERDICTS_KEY = "verdicts"


@dataclass(frozen=True)
class MonitorSnapshot:
    """Everything readers see, replaced as a whole after each write."""

    status: StatusSnapshot
    history: tuple[HistoryEntry, ...] = ()
    events: tuple[ConnectivityEvent, ...] = ()
    verdicts: VerdictState = VerdictState()


@dataclass(frozen=True)
class CycleProbes:
    """Joined results of one cycle's sub-probes. None means skipped."""

    ipv4: ProbeResult | None = None
    ipv6: ProbeResult | None = None
    public_ipv4: str | None = None
    public_ipv6: str | None = None
    dns: DnsCheckResult | None = None


class ConnectivityMonitor:
    """Owns the monitoring cycle and the state it publishes."""

    def __init__(
        self,
        settings_service: SettingsService | None = None,
        prober: ReachabilityProber | None = None,
        public_ip: PublicIPLookup | None = None,
        dns_check: DnsResolutionCheck | None = None,
        history: HistoryStore | None = None,
        event_log: EventLog | None = None,
        notifier: Notifier | None = None,
        status_repo: KeyValueRepository | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.settings_service = settings_service or SettingsService()
        self.prober = prober or ReachabilityProber()
        self.public_ip = public_ip or PublicIPLookup()
        self.dns_check = dns_check or DnsResolutionCheck()
        self.history = history if history is not None else HistoryStore(clock=clock)
        self.event_log = event_log if event_log is not None else EventLog()
        self.notifier = notifier or Notifier()
        self._status_repo = status_repo or KeyValueRepository()
        self._clock = clock

        self._snapshot = MonitorSnapshot(status=StatusSnapshot())
        self._write_lock = asyncio.Lock()
        self._inflight: asyncio.Task | None = None
        self._task: "MonitorTask | None" = None
        self.last_settings: MonitorSettings | None = None

        self._failed_cycles = 0
        self._events_total = 0

    # ============================================
    # Lifecycle
    # ============================================

    async def load(self) -> None:
        """Restore history, events, the last status and the verdict baseline."""
        await self.history.load()
        await self.event_log.load()

        stored = await self._status_repo.get(STATUS_NAMESPACE)
        status = StatusSnapshot()
        verdicts = VerdictState()
        try:
            if STATUS_KEY in stored:
                status = StatusSnapshot.model_validate(stored[STATUS_KEY])
            if VERDICTS_KEY in stored:
                verdicts = VerdictState(**stored[VERDICTS_KEY])
        except (ValueError, TypeError) as e:
            log.warning("status_restore_failed", error=str(e))
            status, verdicts = StatusSnapshot(), VerdictState()

        self._snapshot = MonitorSnapshot(
            status=status,
            history=self.history.query(),
            events=self.event_log.events(),
            verdicts=verdicts,
        )
        log.info(
            "monitor_loaded",
            history=len(self.history),
            events=len(self.event_log),
            cycle_count=status.cycle_count,
            ipv4_verdict=verdicts.ipv4,
            ipv6_verdict=verdicts.ipv6,
        )

    async def start(self) -> None:
        if self._task is None:
            self._task = MonitorTask(self)
        await self._task.start()

    async def stop(self) -> None:
        if self._task is not None:
            await self._task.stop()
        if self._inflight is not None and not self._inflight.done():
            await asyncio.gather(self._inflight, return_exceptions=True)
        await self.notifier.drain()

    def is_running(self) -> bool:
        return self._task is not None and self._task.is_running

    def request_cycle(self) -> None:
        """Run a cycle as soon as possible, e.g. after a settings change."""
        if self.is_running():
            self._task.wake()
        else:
            log.debug("cycle_request_ignored", reason="monitor_not_running")

    # ============================================
    # Reads
    # ============================================

    @property
    def snapshot(self) -> MonitorSnapshot:
        return self._snapshot

    def get_status(self) -> StatusSnapshot:
        return self._snapshot.status

    def get_history(self, since: int | None = None) -> dict[str, Any]:
        """History entries at or after ``since`` plus the event log."""
        snapshot = self._snapshot
        entries = snapshot.history
        if since is not None:
            entries = tuple(e for e in entries if e.timestamp >= since)
        return {"entries": list(entries), "events": list(snapshot.events)}

    def get_stats(self) -> dict[str, Any]:
        snapshot = self._snapshot
        task_status = self._task.status if self._task else None
        return {
            "is_running": self.is_running(),
            "cycle_in_flight": self._inflight is not None and not self._inflight.done(),
            "cycle_count": snapshot.status.cycle_count,
            "failed_cycles": self._failed_cycles,
            "events_total": self._events_total,
            "history_entries": len(snapshot.history),
            "event_log_size": len(snapshot.events),
            "last_check": snapshot.status.last_check,
            "task_run_count": task_status.run_count if task_status else 0,
            "task_error_count": task_status.error_count if task_status else 0,
        }

    # ============================================
    # Cycle
    # ============================================

    async def check_now(self) -> StatusSnapshot:
        """Run one cycle, or join the one already in flight."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._run_cycle())
        else:
            log.debug("cycle_coalesced")
        return await asyncio.shield(self._inflight)

    async def clear_history(self) -> None:
        """Empty history and events. Status and verdict baseline are kept."""
        async with self._write_lock:
            await self.history.clear()
            await self.event_log.clear()
            self.notifier.clear_history()
            self._snapshot = MonitorSnapshot(
                status=self._snapshot.status,
                verdicts=self._snapshot.verdicts,
            )
        log.info("history_and_events_cleared")

    async def _run_cycle(self) -> StatusSnapshot:
        new_cycle_id()
        metrics = get_metrics()
        try:
            settings = await self.settings_service.get()
            self.last_settings = settings
            probes = await self._probe_all(settings)
            return await self._publish(probes)
        except Exception as e:
            self._failed_cycles += 1
            metrics.inc_counter("ipwhat_cycles_failed_total")
            log.exception("cycle_failed", error=str(e))
            raise

    async def _probe_all(self, settings: MonitorSettings) -> CycleProbes:
        enrichment = get_settings().enrichment
        timeout_ms = settings.timeout_ms
        tasks: dict[str, asyncio.Task] = {}

        async with asyncio.TaskGroup() as tg:
            for family in AddressFamily:
                target = settings.target(family)
                if target is None:
                    continue
                tasks[family.value] = tg.create_task(
                    self._guarded(
                        f"probe_{family.value}",
                        self.prober.probe(target.address, family, timeout_ms),
                        ProbeResult(connected=False, error_kind=ErrorKind.CONNECTION_FAILED),
                    )
                )
                if enrichment.public_ip_enabled:
                    tasks[f"public_{family.value}"] = tg.create_task(
                        self._guarded(
                            f"public_ip_{family.value}",
                            self.public_ip.lookup(family, timeout_ms),
                            None,
                            timeout_ms,
                        )
                    )

            if enrichment.dns_check_enabled:
                tasks["dns"] = tg.create_task(
                    self._guarded(
                        "dns",
                        self.dns_check.check(settings.dns_fqdn, timeout_ms),
                        DnsCheckResult(
                            fqdn=settings.dns_fqdn, error_kind=ErrorKind.ENRICHMENT_UNAVAILABLE
                        ),
                        timeout_ms,
                    )
                )

        def result(name: str) -> Any:
            task = tasks.get(name)
            return task.result() if task is not None else None

        return CycleProbes(
            ipv4=result("ipv4"),
            ipv6=result("ipv6"),
            public_ipv4=result("public_ipv4"),
            public_ipv6=result("public_ipv6"),
            dns=result("dns"),
        )

    async def _guarded(
        self,
        name: str,
        coro: Awaitable[T],
        default: T,
        timeout_ms: int | None = None,
    ) -> T:
        # A child must return a value, never raise, or the group cancels its siblings
        try:
            if timeout_ms is None:
                return await coro
            return await asyncio.wait_for(coro, timeout=max(timeout_ms, 1) / 1000)
        except asyncio.TimeoutError:
            log.info("subprobe_timeout", probe=name, timeout_ms=timeout_ms)
            return default
        except Exception as e:
            log.warning("subprobe_failed", probe=name, error=f"{type(e).__name__}: {e}")
            return default

    async def _publish(self, probes: CycleProbes) -> StatusSnapshot:
        async with self._write_lock:
            previous = self._snapshot
            latest = self.history.latest()
            timestamp = self._clock()
            if latest is not None and latest.timestamp > timestamp:
                # Wall clock stepped backwards; keep history ordered
                timestamp = latest.timestamp

            entry = HistoryEntry.from_probes(timestamp, probes.ipv4, probes.ipv6)
            events, verdicts = detect_changes(previous.verdicts, probes.ipv4, probes.ipv6, timestamp)

            # Nothing is published if the history write fails; past it the cycle counts
            stored = await self.history.append(entry, now=timestamp)
            try:
                await self.event_log.append(events)
            except Exception as e:
                log.error("event_persist_failed", events=len(events), error=str(e))
            await self.notifier.notify(events)

            status = StatusSnapshot(
                last_check=timestamp,
                ipv4=FamilyStatus.from_probe(probes.ipv4) if probes.ipv4 else None,
                ipv6=FamilyStatus.from_probe(probes.ipv6) if probes.ipv6 else None,
                public_ipv4=probes.public_ipv4,
                public_ipv6=probes.public_ipv6,
                dns=probes.dns,
                cycle_count=previous.status.cycle_count + 1,
            )
            self._snapshot = MonitorSnapshot(
                status=status,
                history=self.history.query(),
                events=self.event_log.events(),
                verdicts=verdicts,
            )

            try:
                await self._status_repo.set(
                    STATUS_NAMESPACE,
                    {
                        STATUS_KEY: status.model_dump(mode="json"),
                        VERDICTS_KEY: {"ipv4": verdicts.ipv4, "ipv6": verdicts.ipv6},
                    },
                )
            except Exception as e:
                log.error("status_persist_failed", cycle=status.cycle_count, error=str(e))

        self._events_total += len(events)
        self._record_metrics(stored, events)
        log.info(
            "cycle_completed",
            cycle=status.cycle_count,
            ipv4=stored.ipv4,
            ipv6=stored.ipv6,
            ipv4_latency_ms=stored.ipv4_latency_ms,
            ipv6_latency_ms=stored.ipv6_latency_ms,
            events=len(events),
        )
        return status

    def _record_metrics(self, entry: HistoryEntry, events: list[ConnectivityEvent]) -> None:
        metrics = get_metrics()
        metrics.inc_counter("ipwhat_cycles_total")
        for event in events:
            metrics.inc_counter(
                "ipwhat_connectivity_events_total",
                labels={"family": event.family.value, "direction": event.direction.value},
            )

        for family in AddressFamily:
            labels = {"family": family.value}
            verdict = entry.verdict(family)
            if verdict is None:
                continue
            metrics.set_gauge("ipwhat_connected", 1 if verdict else 0, labels)
            values = {
                "ipwhat_latency_ms": entry.latency(family),
                "ipwhat_jitter_ms": getattr(entry, f"{family.value}_jitter"),
                "ipwhat_packet_loss_percent": getattr(entry, f"{family.value}_packet_loss"),
            }
            for name, value in values.items():
                if value is not None:
                    metrics.set_gauge(name, value, labels)


class MonitorTask(PeriodicTask):
    """Drives the monitor on a fixed tick, or on the check interval when asked to."""

    def __init__(self, monitor: ConnectivityMonitor):
        schedule = get_settings().schedule
        super().__init__(
            name="connectivity_monitor",
            interval_seconds=schedule.tick_seconds,
            run_immediately=schedule.run_on_start,
        )
        self.monitor = monitor

    async def run_once(self) -> None:
        await self.monitor.check_now()

    def next_interval(self) -> float:
        schedule = get_settings().schedule
        settings = self.monitor.last_settings
        if not schedule.follow_check_interval or settings is None:
            return self.interval_seconds
        return max(settings.check_interval_seconds, schedule.min_tick_seconds)


# Global monitor instance
_monitor: ConnectivityMonitor | None = None


def get_monitor() -> ConnectivityMonitor:
    """Get the global monitor instance."""
    global _monitor
    if _monitor is None:
        _monitor = ConnectivityMonitor()
    return _monitor


def reset_monitor() -> None:
    """Reset the global monitor (for testing)."""
    global _monitor
    _monitor = None
