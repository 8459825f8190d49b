"""Application lifespan management."""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from fastapi import FastAPI

from ..config import get_settings
from ..db import get_db
from ..logging import get_logger
from .monitor import ConnectivityMonitor, get_monitor

log = get_logger("lifespan")


@dataclass
class AppState:
    """Application state container for dependency injection."""

    monitor: ConnectivityMonitor = field(default_factory=get_monitor)
    start_time: float = field(default_factory=time.time)

    @property
    def uptime_seconds(self) -> float:
        """Get application uptime in seconds."""
        return time.time() - self.start_time


# Global state instance
_state: AppState | None = None


def get_state() -> AppState:
    """Get the global application state."""
    if _state is None:
        raise RuntimeError("Application state not initialized. Is the app running?")
    return _state


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[dict]:
    """Application lifespan manager.

    Handles:
    - Database initialization
    - Restoring history, events and the verdict baseline
    - Starting and stopping the monitoring loop
    """
    global _state
    settings = get_settings()

    log.info(
        "app_starting",
        app_name=settings.app_name,
        version=settings.version,
        debug=settings.debug,
    )

    db = get_db()
    await db.initialize()

    state = AppState()
    _state = state

    await state.monitor.load()
    await state.monitor.start()
    log.info(
        "monitor_auto_started",
        tick_seconds=settings.schedule.tick_seconds,
        follow_check_interval=settings.schedule.follow_check_interval,
    )

    log.info("app_started", uptime_seconds=0)

    yield {"state": state}

    log.info("app_stopping")

    # Waits for an in-flight cycle and pending webhook deliveries
    await state.monitor.stop()
    log.info("monitor_stopped")

    _state = None
    log.info("app_stopped", uptime_seconds=state.uptime_seconds)
