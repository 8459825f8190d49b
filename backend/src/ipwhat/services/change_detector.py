"""Reachability change detection and the bounded event log."""

import structlog

from ..config import get_settings
from ..db.repository import EventRepository
from ..models import AddressFamily, ConnectivityEvent, ProbeResult, VerdictState

log = structlog.get_logger()


def detect_changes(
    previous: VerdictState,
    ipv4: ProbeResult | None,
    ipv6: ProbeResult | None,
    timestamp: int,
) -> tuple[list[ConnectivityEvent], VerdictState]:
    """Compare this cycle's verdicts against the previous ones.

    An event fires for a family only when its previous verdict is known and
    differs from the current one. A family that was not probed keeps its
    previous verdict. Returns the events and the state for the next cycle.
    """
    current = {AddressFamily.IPV4: ipv4, AddressFamily.IPV6: ipv6}
    events = []
    verdicts = {}

    for family, result in current.items():
        before = previous.get(family)
        if result is None:
            verdicts[family.value] = before
            continue

        verdicts[family.value] = result.connected
        if before is not None and before != result.connected:
            events.append(ConnectivityEvent.transition(family, result.connected, timestamp))

    return events, VerdictState(**verdicts)


class EventLog:
    """Most-recent-N log of connectivity events, oldest evicted first."""

    def __init__(self, repo: EventRepository | None = None, max_events: int | None = None) -> None:
        self._repo = repo or EventRepository()
        self.max_events = max_events or get_settings().history.max_events
        self._events: tuple[ConnectivityEvent, ...] = ()

    async def load(self) -> int:
        events = await self._repo.load()
        self._events = tuple(events[-self.max_events:])
        return len(self._events)

    async def append(self, events: list[ConnectivityEvent]) -> None:
        """Record ``events`` in memory, then persist them.

        A failed write leaves the in-memory log ahead of the table; the
        error propagates to the caller.
        """
        if not events:
            return
        self._events = (*self._events, *events)[-self.max_events:]
        for event in events:
            log.info(
                "connectivity_changed",
                family=event.family.value,
                direction=event.direction.value,
                message=event.message,
            )
        await self._repo.append(events, self.max_events)

    def events(self) -> tuple[ConnectivityEvent, ...]:
        return self._events

    def __len__(self) -> int:
        return len(self._events)

    async def clear(self) -> None:
        await self._repo.clear()
        self._events = ()
