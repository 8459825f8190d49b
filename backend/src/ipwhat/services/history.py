"""Time-bounded connectivity history store."""

from typing import Callable

import structlog

from ..config import get_settings
from ..db.repository import HistoryRepository
from ..models import AddressFamily, HistoryEntry, now_ms
from .statistics import jitter, packet_loss

log = structlog.get_logger()

HOUR_MS = 60 * 60 * 1000


class HistoryOrderError(ValueError):
    """Raised when an entry would be appended before the newest stored entry."""


class HistoryStore:
    """Append-only history of per-cycle entries, pruned by age.

    The in-memory sequence is an immutable tuple replaced on every write, so
    readers always see either the old or the new history, never a mix.
    """

    def __init__(
        self,
        repo: HistoryRepository | None = None,
        retention_hours: int | None = None,
        stats_window: int | None = None,
        min_jitter_samples: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        settings = get_settings().history
        self._repo = repo or HistoryRepository()
        self.retention_hours = retention_hours or settings.retention_hours
        self.stats_window = stats_window or settings.stats_window
        self.min_jitter_samples = min_jitter_samples or settings.min_jitter_samples
        self._clock = clock
        self._entries: tuple[HistoryEntry, ...] = ()

    @property
    def retention_ms(self) -> int:
        return self.retention_hours * HOUR_MS

    async def load(self) -> int:
        """Restore persisted entries still inside the retention window."""
        cutoff = self._clock() - self.retention_ms
        self._entries = tuple(await self._repo.load(after=cutoff))
        log.info("history_loaded", entries=len(self._entries))
        return len(self._entries)

    async def append(self, entry: HistoryEntry, now: int | None = None) -> HistoryEntry:
        """Append ``entry`` with statistics computed over the updated history.

        Returns the stored entry, which carries the jitter and packet-loss
        fields. Entries older than the retention window are pruned.
        """
        if self._entries and entry.timestamp < self._entries[-1].timestamp:
            raise HistoryOrderError(
                f"entry at {entry.timestamp} is older than newest entry at "
                f"{self._entries[-1].timestamp}"
            )

        updated = [*self._entries, entry]
        derived = {}
        for family in AddressFamily:
            derived[f"{family.value}_jitter"] = jitter(
                updated, family, self.stats_window, self.min_jitter_samples
            )
            derived[f"{family.value}_packet_loss"] = packet_loss(
                updated, family, self.stats_window
            )
        stored = entry.model_copy(update=derived)
        updated[-1] = stored

        cutoff = (self._clock() if now is None else now) - self.retention_ms
        await self._repo.append(stored, prune_before=cutoff)
        self._entries = tuple(e for e in updated if e.timestamp > cutoff)
        return stored

    def query(self, since: int | None = None) -> tuple[HistoryEntry, ...]:
        """Entries in insertion order, optionally only those at or after ``since``."""
        entries = self._entries
        if since is None:
            return entries
        return tuple(e for e in entries if e.timestamp >= since)

    def latest(self) -> HistoryEntry | None:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    async def clear(self) -> None:
        deleted = await self._repo.clear()
        self._entries = ()
        log.info("history_cleared", rows=deleted)
