"""Scheduler service - the due-schedule scan.

Manifesto:
    The scheduler is an explicit, restartable job with its own start/stop
    lifecycle. Everything it needs to decide what is due lives in the
    persisted ``next_run_at`` of each Schedule row, so a restarted
    process recomputes the same answer. The timing backend only says
    WHEN to look; the service decides WHAT fires.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER SERVICE                                                            │
│                                                                               │
│   backend ──tick──► SchedulerService.tick()                                   │
│                        │                                                      │
│                        ├── due = schedules where not paused and               │
│                        │         next_run_at <= now                           │
│                        │                                                      │
│                        └── for each due schedule:                             │
│                              evaluator.assess(ScheduleTick)                   │
│                                ├── request  → submit() → ScheduleRun fired    │
│                                ├── overlap  → ScheduleRun missed              │
│                                └── other    → ScheduleRun skipped             │
│                              next_run_at = next eligible cron time > now      │
│                                                                               │
│   SystemicError anywhere in a tick → halt: stop backend, notify runtime       │
└──────────────────────────────────────────────────────────────────────────────┘

Overdue schedules found after downtime fire once and then advance past
``now``; missed intervals are not replayed one by one.

Tags:
    conduit-core, scheduling, beat-as-poller, service
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Protocol

from conduit.core.errors import SystemicError
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import get_logger
from conduit.core.store import InMemoryStore
from conduit.core.timestamps import Clock, new_id, utc_now

from .cron import compute_next_run
from .protocol import SchedulerBackend

if TYPE_CHECKING:
    from conduit.execution.models import ExecutionRequest
    from conduit.triggers.evaluator import TriggerEvaluator
    from conduit.triggers.models import Schedule, ScheduleRun

logger = get_logger(__name__)

Submit = Callable[["ExecutionRequest"], Awaitable[str]]
HaltCallback = Callable[[SystemicError], Awaitable[None]]


class _Eligibility(Protocol):
    def is_eligible(self, day: date) -> bool: ...


def next_run_for(schedule: Schedule, after: datetime, calendar: _Eligibility) -> datetime | None:
    """Next eligible fire time of ``schedule`` strictly after ``after``."""
    return compute_next_run(schedule.cron_expression, after, schedule.timezone, calendar.is_eligible)


@dataclass
class SchedulerStats:
    """Statistics for the scheduler service."""

    tick_count: int = 0
    schedules_fired: int = 0
    schedules_missed: int = 0
    schedules_skipped: int = 0
    schedules_failed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "schedules_fired": self.schedules_fired,
            "schedules_missed": self.schedules_missed,
            "schedules_skipped": self.schedules_skipped,
            "schedules_failed": self.schedules_failed,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerHealth:
    healthy: bool
    halted: bool
    backend: dict[str, Any]
    schedules_active: int = 0
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "halted": self.halted,
            "backend": self.backend,
            "schedules_active": self.schedules_active,
            "stats": self.stats.to_dict(),
        }


class SchedulerService:
    """Due-schedule scan driven by a timing backend.

    Example:
        >>> service = SchedulerService(
        ...     backend=AsyncioSchedulerBackend("scheduler"),
        ...     store=store,
        ...     evaluator=evaluator,
        ...     submit=triggers.dispatch,
        ... )
        >>> service.start()
        >>> runs = await service.tick()   # or let the backend call it
        >>> await service.stop()
    """

    def __init__(
        self,
        backend: SchedulerBackend,
        store: InMemoryStore,
        evaluator: TriggerEvaluator,
        submit: Submit,
        interval_seconds: float = 10.0,
        clock: Clock = utc_now,
        bus: EventBus | None = None,
        on_halt: HaltCallback | None = None,
    ) -> None:
        self.backend = backend
        self._store = store
        self._evaluator = evaluator
        self._submit = submit
        self.interval = interval_seconds
        self._clock = clock
        self._bus = bus
        self._on_halt = on_halt
        self._stats = SchedulerStats()
        self._running = False
        self._halted = False

    # === Lifecycle ===

    def start(self) -> None:
        if self._running:
            logger.warning("scheduler_already_running")
            return
        logger.info("scheduler_starting", backend=self.backend.name, interval_seconds=self.interval)
        self.backend.start(self.tick, self.interval)
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        await self.backend.stop()
        self._running = False
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def halted(self) -> bool:
        return self._halted

    # === Tick Processing ===

    def due_schedules(self, now: datetime) -> list[Schedule]:
        due = self._store.schedules.find(
            lambda s: not s.paused and s.next_run_at is not None and s.next_run_at <= now
        )
        due.sort(key=lambda s: s.next_run_at)
        return due

    async def tick(self) -> list[ScheduleRun]:
        """One scan over due schedules. Returns the runs recorded."""
        if self._halted:
            return []
        self._stats.tick_count += 1
        now = self._clock()
        self._stats.last_tick = now
        runs = []
        try:
            due = self.due_schedules(now)
            if not due:
                logger.debug("no_schedules_due")
                return runs
            logger.info("schedules_due", count=len(due))
            for schedule in due:
                runs.append(await self._process_schedule(schedule, now))
        except SystemicError as e:
            await self._halt(e)
        return runs

    async def _process_schedule(self, schedule: Schedule, now: datetime) -> ScheduleRun:
        from conduit.triggers.models import ScheduleRun, ScheduleRunStatus, ScheduleTick

        scheduled_for = schedule.next_run_at or now
        execution_id = None
        reason = None
        try:
            evaluation = self._evaluator.assess(ScheduleTick(schedule_id=schedule.id, scheduled_for=scheduled_for))
            if evaluation.request is not None:
                execution_id = await self._submit(evaluation.request)
                status = ScheduleRunStatus.FIRED
                self._stats.schedules_fired += 1
            elif evaluation.reason == "overlap":
                status = ScheduleRunStatus.MISSED
                reason = evaluation.reason
                self._stats.schedules_missed += 1
            else:
                status = ScheduleRunStatus.SKIPPED
                reason = evaluation.reason
                self._stats.schedules_skipped += 1
        except SystemicError:
            raise
        except Exception as e:
            logger.exception("schedule_run_failed", schedule_id=schedule.id, error=str(e))
            status = ScheduleRunStatus.FAILED
            reason = str(e) or type(e).__name__
            self._stats.schedules_failed += 1
            self._stats.last_error = reason

        schedule.last_run_at = now
        schedule.next_run_at = next_run_for(schedule, now, self._evaluator.schedule_calendar(schedule))
        self._store.schedules.save(schedule)

        run = ScheduleRun(
            id=new_id("srun"),
            organization_id=schedule.organization_id,
            schedule_id=schedule.id,
            trigger_id=schedule.trigger_id,
            scheduled_for=scheduled_for,
            status=status,
            recorded_at=now,
            execution_id=execution_id,
            reason=reason,
        )
        self._store.schedule_runs.insert(run)
        logger.info(
            "schedule_run_recorded",
            schedule_id=schedule.id,
            trigger_id=schedule.trigger_id,
            status=status.value,
            execution_id=execution_id,
            reason=reason,
            next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None,
        )
        if status == ScheduleRunStatus.MISSED and self._bus is not None:
            await self._bus.publish(
                Event(
                    event_type=EventTypes.SCHEDULE_MISSED,
                    source="core.scheduling",
                    payload={
                        "schedule_id": schedule.id,
                        "trigger_id": schedule.trigger_id,
                        "workflow_id": schedule.workflow_id,
                        "scheduled_for": scheduled_for.isoformat(),
                        "reason": reason,
                    },
                    organization_id=schedule.organization_id,
                )
            )
        return run

    async def _halt(self, error: SystemicError) -> None:
        self._halted = True
        self._stats.last_error = str(error)
        logger.critical("scheduler_halted", error=str(error), error_type=type(error).__name__)
        await self.backend.stop()
        self._running = False
        if self._on_halt is not None:
            await self._on_halt(error)

    # === Run history & Health ===

    def runs(self, schedule_id: str, limit: int = 50) -> list[ScheduleRun]:
        runs = self._store.schedule_runs.find(lambda r: r.schedule_id == schedule_id)
        runs.sort(key=lambda r: r.recorded_at, reverse=True)
        return runs[:limit]

    def health(self) -> SchedulerHealth:
        backend_health = self.backend.health()
        try:
            active = len(self._store.schedules.find(lambda s: not s.paused))
        except SystemicError:
            active = 0
        return SchedulerHealth(
            healthy=self._running and not self._halted and backend_health.get("healthy", False),
            halted=self._halted,
            backend=backend_health,
            schedules_active=active,
            stats=self._stats,
        )

    def get_stats(self) -> SchedulerStats:
        return self._stats


__all__ = [
    "SchedulerService",
    "SchedulerStats",
    "SchedulerHealth",
    "Submit",
    "HaltCallback",
    "next_run_for",
]
