"""Database module for IP What."""

from .connection import DatabaseConnection, get_db, reset_db
from .repository import (
    SETTINGS_NAMESPACE,
    STATUS_NAMESPACE,
    EventRepository,
    HistoryRepository,
    KeyValueRepository,
)

__all__ = [
    "DatabaseConnection",
    "get_db",
    "reset_db",
    "SETTINGS_NAMESPACE",
    "STATUS_NAMESPACE",
    "EventRepository",
    "HistoryRepository",
    "KeyValueRepository",
]
