"""Rolling jitter and packet-loss statistics over connectivity history."""

import math
import statistics
from typing import Sequence

from ..models import AddressFamily, HistoryEntry

DEFAULT_WINDOW = 20
MIN_JITTER_SAMPLES = 5
TRIM_FRACTION = 0.1


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (not banker's rounding)."""
    return int(math.floor(value + 0.5))


def jitter(
    history: Sequence[HistoryEntry],
    family: AddressFamily,
    window: int = DEFAULT_WINDOW,
    min_samples: int = MIN_JITTER_SAMPLES,
) -> int | None:
    """Trimmed standard deviation of recent successful-probe latencies.

    Only entries where the family was connected and a latency was measured
    count as samples; zero readings are dropped. Returns None with fewer than ``min_samples`` samples.
    The lowest and highest 10% (at least one each) are dropped before taking
    the population standard deviation.
    """
    recent = history[-window:] if window > 0 else []
    latencies = [
        entry.latency(family)
        for entry in recent
        if entry.verdict(family) is True and (entry.latency(family) or 0) > 0
    ]
    if len(latencies) < min_samples:
        return None

    latencies.sort()
    trim = max(1, int(len(latencies) * TRIM_FRACTION))
    trimmed = latencies[trim:-trim]
    if len(trimmed) < 2:
        return None

    return round_half_up(statistics.pstdev(trimmed))


def packet_loss(
    history: Sequence[HistoryEntry],
    family: AddressFamily,
    window: int = DEFAULT_WINDOW,
) -> int | None:
    """Percentage of the last ``window`` entries where the family was unreachable.

    Not-probed entries stay in the denominator. None only for an empty window.
    """
    recent = history[-window:] if window > 0 else []
    if not recent:
        return None

    failures = sum(1 for entry in recent if entry.verdict(family) is False)
    return round_half_up(100 * failures / len(recent))
