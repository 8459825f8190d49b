"""Services module for IP What."""

from .change_detector import EventLog, detect_changes
from .enrichment import DnsResolutionCheck, PublicIPLookup
from .history import HistoryOrderError, HistoryStore
from .lifespan import lifespan, AppState, get_state
from .monitor import ConnectivityMonitor, MonitorSnapshot, MonitorTask, get_monitor, reset_monitor
from .notifier import Notifier, SSESubscriber, build_alert
from .prober import ReachabilityProber, classify_failure
from .settings import SettingsService
from .statistics import jitter, packet_loss

__all__ = [
    "EventLog",
    "detect_changes",
    "DnsResolutionCheck",
    "PublicIPLookup",
    "HistoryOrderError",
    "HistoryStore",
    "lifespan",
    "AppState",
    "get_state",
    "ConnectivityMonitor",
    "MonitorSnapshot",
    "MonitorTask",
    "get_monitor",
    "reset_monitor",
    "Notifier",
    "SSESubscriber",
    "build_alert",
    "ReachabilityProber",
    "classify_failure",
    "SettingsService",
    "jitter",
    "packet_loss",
]
