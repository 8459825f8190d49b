"""Periodic background work with on-demand wake-ups.

``PeriodicTask`` runs ``run_once`` on a timer until stopped. A failed run is
logged and counted and the loop carries on. ``wake()`` cuts the current wait
short; a wake that lands while a run is in progress queues exactly one
follow-up run.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import structlog

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskState(str, Enum):
    """Background task lifecycle states."""

    PENDING = "pending"  # Not yet started
    RUNNING = "running"
    STOPPING = "stopping"  # Stop requested, current run finishing
    STOPPED = "stopped"


@dataclass
class TaskStatus:
    name: str
    state: TaskState = TaskState.PENDING
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    error_count: int = 0
    wake_count: int = 0
    last_error: str | None = None


class PeriodicTask(ABC):
    def __init__(self, name: str, interval_seconds: float = 60.0, run_immediately: bool = True):
        self.name = name
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._status = TaskStatus(name=name)
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        # Started but not yet scheduled counts as running
        if self._task is None or self._task.done():
            return False
        return self._status.state in (TaskState.PENDING, TaskState.RUNNING)

    @abstractmethod
    async def run_once(self) -> None:
        """One iteration of the work."""

    def next_interval(self) -> float:
        """Seconds until the next run; asked again after every run."""
        return self.interval_seconds

    def wake(self) -> None:
        if not self.is_running:
            return
        self._status.wake_count += 1
        self._wake.set()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.next_interval())
        except asyncio.TimeoutError:
            pass

    async def _run_guarded(self) -> None:
        try:
            await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._status.error_count += 1
            self._status.last_error = str(e)
            log.error(
                "periodic_task_failed",
                task=self.name,
                error=str(e),
                error_count=self._status.error_count,
            )
            return
        self._status.run_count += 1
        self._status.last_run_at = _utcnow()

    async def _loop(self) -> None:
        self._status.state = TaskState.RUNNING
        self._status.started_at = _utcnow()
        log.info("periodic_task_started", task=self.name, interval_seconds=self.next_interval())

        try:
            if not self.run_immediately:
                await self._sleep()
            while not self._stop.is_set():
                # Cleared before the run so a wake during the run is kept
                self._wake.clear()
                await self._run_guarded()
                if self._stop.is_set():
                    break
                await self._sleep()
        except asyncio.CancelledError:
            log.info("periodic_task_cancelled", task=self.name)
        finally:
            self._status.state = TaskState.STOPPED
            self._status.stopped_at = _utcnow()
            log.info(
                "periodic_task_stopped",
                task=self.name,
                run_count=self._status.run_count,
                error_count=self._status.error_count,
            )

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            log.warning("periodic_task_already_running", task=self.name)
            return

        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self._status.state = TaskState.PENDING
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self, timeout: float = 5.0) -> None:
        """Ask the loop to exit after the current run; cancel it after ``timeout``."""
        task, self._task = self._task, None
        if task is None:
            return

        self._status.state = TaskState.STOPPING
        self._stop.set()
        self._wake.set()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("periodic_task_force_cancel", task=self.name)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
