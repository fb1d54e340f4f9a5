"""Background sync scheduling."""

from .host import (
    AsyncioTaskHost,
    BackoffKind,
    BackoffPolicy,
    Constraints,
    ExistingWorkPolicy,
    TaskHost,
    TaskRequest,
)
from .power import detect_battery_optimized, is_battery_low, resolve_battery_policy
from .scheduler import (
    CONNECTIVITY_SYNC_TASK,
    IMMEDIATE_SYNC_TASK,
    PERIODIC_SYNC_TASK,
    BackgroundScheduler,
    build_task_handlers,
    dispatch_task,
)

__all__ = [
    "AsyncioTaskHost",
    "BackgroundScheduler",
    "BackoffKind",
    "BackoffPolicy",
    "CONNECTIVITY_SYNC_TASK",
    "Constraints",
    "ExistingWorkPolicy",
    "IMMEDIATE_SYNC_TASK",
    "PERIODIC_SYNC_TASK",
    "TaskHost",
    "TaskRequest",
    "build_task_handlers",
    "detect_battery_optimized",
    "dispatch_task",
    "is_battery_low",
    "resolve_battery_policy",
]
