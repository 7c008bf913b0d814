"""Tests for SchedulerService and the asyncio timing backend."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from conduit.core.errors import PersistenceError
from conduit.core.events import Event, EventTypes
from conduit.core.scheduling import AsyncioSchedulerBackend, SchedulerService
from conduit.execution.models import Execution, ExecutionStatus
from conduit.orchestration.registry import WorkflowRegistry
from conduit.triggers import TriggerEvaluator, TriggerService
from conduit.triggers.models import ScheduleRunStatus


class RecordingSubmit:
    def __init__(self) -> None:
        self.requests = []

    async def __call__(self, request) -> str:
        self.requests.append(request)
        return f"exe_{len(self.requests)}"


@pytest.fixture
def submit():
    return RecordingSubmit()


@pytest.fixture
def evaluator(store, settings, clock):
    return TriggerEvaluator(store, settings, clock=clock)


@pytest.fixture
def triggers(store, settings, clock, evaluator, workflow_factory):
    WorkflowRegistry(store, clock=clock).register(workflow_factory("wf"))
    return TriggerService(store, evaluator, settings, clock=clock)


@pytest.fixture
def scheduler(store, evaluator, submit, clock, bus):
    return SchedulerService(
        backend=AsyncioSchedulerBackend("scheduler"),
        store=store,
        evaluator=evaluator,
        submit=submit,
        interval_seconds=60,
        clock=clock,
        bus=bus,
    )


class TestSchedulerTick:
    """Due-schedule scans."""

    @pytest.mark.asyncio
    async def test_nothing_due(self, scheduler, triggers):
        """A tick before the next run records nothing."""
        triggers.create_trigger("wf", "daily", "scheduled", {"cron_expression": "0 10 * * *"})
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_due_schedule_fires_and_advances(self, scheduler, triggers, clock, submit):
        """A due schedule fires once and moves to its next run."""
        trigger = triggers.create_trigger("wf", "daily", "scheduled", {"cron_expression": "0 10 * * *"})
        clock.set(datetime(2026, 3, 2, 10, 0, 30, tzinfo=UTC))
        runs = await scheduler.tick()
        assert [r.status for r in runs] == [ScheduleRunStatus.FIRED]
        assert runs[0].execution_id == "exe_1"
        assert submit.requests[0].input["scheduled_for"] == "2026-03-02T10:00:00+00:00"
        schedule = triggers.schedule_for(trigger.id)
        assert schedule.next_run_at == datetime(2026, 3, 3, 10, 0, tzinfo=UTC)
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_overdue_fires_once(self, scheduler, triggers, clock, submit):
        """After downtime an overdue schedule fires once, not once per missed interval."""
        triggers.create_trigger("wf", "hourly", "scheduled", {"cron_expression": "0 * * * *"})
        clock.advance(hours=6)
        runs = await scheduler.tick()
        assert len(runs) == 1
        assert len(submit.requests) == 1
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_overlap_recorded_as_missed(self, scheduler, triggers, clock, store, bus):
        """An overlapping run is recorded as missed and announced."""
        missed: list[Event] = []

        async def handler(event: Event) -> None:
            missed.append(event)

        await bus.subscribe(EventTypes.SCHEDULE_MISSED, handler)
        trigger = triggers.create_trigger("wf", "hourly", "scheduled", {"cron_expression": "0 * * * *"})
        store.executions.insert(
            Execution(id="exe_x", organization_id="default", workflow_id="wf", workflow_version=1,
                      status=ExecutionStatus.RUNNING, trigger_id=trigger.id)
        )
        clock.advance(hours=1)
        runs = await scheduler.tick()
        assert runs[0].status == ScheduleRunStatus.MISSED
        assert missed[0].payload["trigger_id"] == trigger.id
        assert scheduler.get_stats().schedules_missed == 1

    @pytest.mark.asyncio
    async def test_paused_not_due(self, scheduler, triggers, clock):
        """Paused schedules are not picked up."""
        trigger = triggers.create_trigger("wf", "hourly", "scheduled", {"cron_expression": "0 * * * *"})
        triggers.pause_schedule(trigger.id)
        clock.advance(hours=2)
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_submit_failure_recorded(self, store, evaluator, triggers, clock):
        """A failed submit is a failed run, and the schedule still advances."""

        async def failing_submit(request) -> str:
            raise RuntimeError("queue full")

        scheduler = SchedulerService(AsyncioSchedulerBackend(), store, evaluator, failing_submit, clock=clock)
        trigger = triggers.create_trigger("wf", "hourly", "scheduled", {"cron_expression": "0 * * * *"})
        clock.advance(hours=1)
        runs = await scheduler.tick()
        assert runs[0].status == ScheduleRunStatus.FAILED
        assert runs[0].reason == "queue full"
        assert triggers.schedule_for(trigger.id).next_run_at > clock()
        assert scheduler.runs(runs[0].schedule_id)[0].id == runs[0].id

    @pytest.mark.asyncio
    async def test_persistence_loss_halts(self, store, evaluator, triggers, clock, submit):
        """A systemic failure halts the scheduler and notifies the runtime."""
        halts = []

        async def on_halt(error):
            halts.append(error)

        scheduler = SchedulerService(AsyncioSchedulerBackend(), store, evaluator, submit, clock=clock, on_halt=on_halt)
        triggers.create_trigger("wf", "hourly", "scheduled", {"cron_expression": "0 * * * *"})
        store.available = False
        assert await scheduler.tick() == []
        assert scheduler.halted
        assert isinstance(halts[0], PersistenceError)
        store.available = True
        clock.advance(hours=1)
        assert await scheduler.tick() == []
        assert scheduler.health().halted


class TestSchedulerLifecycle:
    """Start/stop and health."""

    @pytest.mark.asyncio
    async def test_start_stop(self, scheduler):
        """The service runs its backend loop until stopped."""
        scheduler.start()
        assert scheduler.is_running
        assert scheduler.health().to_dict()["healthy"] is True
        await scheduler.stop()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_backend_ticks(self):
        """The asyncio backend invokes its callback on the interval."""
        backend = AsyncioSchedulerBackend("test", tick_immediately=True)
        ticks = []

        async def callback() -> None:
            ticks.append(1)

        backend.start(callback, interval_seconds=0.01)
        await asyncio.sleep(0.05)
        await backend.stop()
        assert backend.tick_count >= 2
        assert len(ticks) == backend.tick_count
        assert not backend.is_running

    @pytest.mark.asyncio
    async def test_backend_survives_tick_errors(self):
        """A failing tick is logged and the loop continues."""
        backend = AsyncioSchedulerBackend("test", tick_immediately=True)

        async def callback() -> None:
            raise RuntimeError("boom")

        backend.start(callback, interval_seconds=0.01)
        await asyncio.sleep(0.05)
        assert backend.is_running
        await backend.stop()
        assert backend.tick_count >= 2
