"""Scheduling: timing backends, cron evaluation and the due-schedule scan.

Beat-as-poller: a :class:`SchedulerBackend` ticks on a fixed interval;
:class:`SchedulerService` evaluates due schedules on each tick. The same
backend type drives the runtime's other background loops (condition
scan, monitor poll, maintenance).
"""

from .asyncio_backend import AsyncioSchedulerBackend
from .cron import compute_next_run, resolve_timezone, validate_cron
from .protocol import BackendHealth, SchedulerBackend, TickCallback
from .service import SchedulerHealth, SchedulerService, SchedulerStats, next_run_for

__all__ = [
    "AsyncioSchedulerBackend",
    "BackendHealth",
    "SchedulerBackend",
    "SchedulerHealth",
    "SchedulerService",
    "SchedulerStats",
    "TickCallback",
    "compute_next_run",
    "next_run_for",
    "resolve_timezone",
    "validate_cron",
]
