"""Background task management for IP What."""

from .scheduler import PeriodicTask, TaskState, TaskStatus

__all__ = [
    "PeriodicTask",
    "TaskState",
    "TaskStatus",
]
