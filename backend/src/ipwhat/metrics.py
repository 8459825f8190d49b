"""Prometheus metrics for IP What.

Exposes application metrics in Prometheus format:
- HTTP request metrics (count, duration, status)
- Per-family reachability, latency, jitter and packet loss
- Monitoring cycle and connectivity event counters
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

METRIC_HELP = {
    "ipwhat_connected": "Family reachable on the last cycle (1=yes, 0=no)",
    "ipwhat_latency_ms": "Latency of the last successful probe in milliseconds",
    "ipwhat_jitter_ms": "Rolling jitter in milliseconds",
    "ipwhat_packet_loss_percent": "Rolling packet loss percentage",
    "ipwhat_cycles_total": "Completed monitoring cycles",
    "ipwhat_cycles_failed_total": "Monitoring cycles that raised",
    "ipwhat_connectivity_events_total": "Connectivity transitions by family and direction",
}


@dataclass
class MetricsCollector:
    """Collects and exposes application metrics.

    Gauges and counters are keyed by name plus sorted labels and exported in
    Prometheus text format.
    """

    # {(method, path, status): count}
    request_count: dict[tuple[str, str, int], int] = field(default_factory=lambda: defaultdict(int))

    # {(method, path): [total_ms, count]}
    request_duration: dict[tuple[str, str], list[float]] = field(
        default_factory=lambda: defaultdict(lambda: [0.0, 0])
    )

    gauges: dict[str, float] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    start_time: float = field(default_factory=time.time)

    def record_request(
        self, method: str, path: str, status_code: int, duration_ms: float
    ) -> None:
        """Record an HTTP request."""
        normalized_path = self._normalize_path(path)

        self.request_count[(method, normalized_path, status_code)] += 1
        duration_data = self.request_duration[(method, normalized_path)]
        duration_data[0] += duration_ms
        duration_data[1] += 1

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(name, labels)
        self.gauges[key] = value

    def inc_counter(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        key = self._make_key(name, labels)
        self.counters[key] += value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        return self.gauges.get(self._make_key(name, labels))

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        return self.counters.get(self._make_key(name, labels), 0)

    def _make_key(self, name: str, labels: dict[str, str] | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def _normalize_path(self, path: str) -> str:
        """Replace numeric segments to keep path cardinality low."""
        return "/".join(":id" if part.isdigit() else part for part in path.split("/"))

    def get_uptime_seconds(self) -> float:
        return time.time() - self.start_time

    def to_prometheus_format(self, app_state: Any | None = None) -> str:
        """Export metrics in Prometheus text format."""
        lines: list[str] = []

        def family(name: str, kind: str, help_text: str, samples: list[str]) -> None:
            if not samples:
                return
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {kind}")
            lines.extend(samples)
            lines.append("")

        family(
            "ipwhat_uptime_seconds", "gauge", "Application uptime in seconds",
            [f"ipwhat_uptime_seconds {self.get_uptime_seconds():.2f}"],
        )
        family(
            "http_requests_total", "counter", "Total HTTP requests",
            [
                f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                for (method, path, status), count in sorted(self.request_count.items())
            ],
        )
        durations = sorted(self.request_duration.items())
        family(
            "http_request_duration_ms_sum", "counter", "Total HTTP request duration in milliseconds",
            [
                f'http_request_duration_ms_sum{{method="{method}",path="{path}"}} {total_ms:.2f}'
                for (method, path), (total_ms, _) in durations
            ],
        )
        family(
            "http_request_duration_ms_count", "counter", "Number of HTTP requests for duration",
            [
                f'http_request_duration_ms_count{{method="{method}",path="{path}"}} {count}'
                for (method, path), (_, count) in durations
            ],
        )

        if app_state is not None:
            stats = app_state.monitor.get_stats()
            family(
                "ipwhat_monitor_running", "gauge", "Monitor loop state (1=running, 0=stopped)",
                [f"ipwhat_monitor_running {1 if stats['is_running'] else 0}"],
            )
            family(
                "ipwhat_history_entries", "gauge", "Entries inside the retention window",
                [f"ipwhat_history_entries {stats['history_entries']}"],
            )
            if stats["last_check"] is not None:
                family(
                    "ipwhat_last_check_timestamp", "gauge", "Unix timestamp of the last completed cycle",
                    [f"ipwhat_last_check_timestamp {stats['last_check'] / 1000:.3f}"],
                )

        # Per-family gauges and cycle counters recorded by the monitor
        for kind, samples in (("gauge", self.gauges), ("counter", self.counters)):
            grouped: dict[str, list[str]] = defaultdict(list)
            for key, value in sorted(samples.items()):
                grouped[key.split("{", 1)[0]].append(f"{key} {value}")
            for name, lines_for_name in grouped.items():
                family(name, kind, METRIC_HELP.get(name, name.replace("_", " ")), lines_for_name)

        return "\n".join(lines)


# Global metrics collector instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def reset_metrics() -> None:
    """Reset metrics collector (for testing)."""
    global _metrics
    _metrics = None
