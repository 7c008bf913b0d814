"""Timing backends for conduit's periodic loops.

A backend decides only *when* to tick; the callback's owner decides
*what* a tick does. One backend implementation drives four loops in the
runtime, each with its own interval:

    scheduler    SchedulerService.tick      due schedules
    conditions   TriggerService.scan_conditions  threshold / deadline triggers
    monitor      ExecutionMonitor.poll      queue snapshots
    maintenance  ConduitRuntime.run_maintenance
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 10.0) -> None:
        """Begin calling ``tick_callback`` every ``interval_seconds``."""
        ...

    async def stop(self) -> None:
        """Stop ticking; a tick already running is allowed to finish."""
        ...

    def health(self) -> dict[str, Any]: ...


@dataclass
class BackendHealth:
    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }
        data.update(self.extra)
        return data
