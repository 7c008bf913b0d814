"""
Shared pytest fixtures for conduit-core tests.

This module provides:
- Fast settings (millisecond backoff, tiny grace periods)
- A controllable clock for time-dependent components
- A recording notification dispatcher
- Workflow builders and a started runtime

Usage:
    Fixtures are auto-discovered by pytest::

        async def test_something(runtime, executor):
            ...
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

from conduit.core.config import ConduitSettings
from conduit.core.events.memory import InMemoryEventBus
from conduit.core.store import InMemoryStore
from conduit.execution import RegistryStepExecutor
from conduit.notifications import DeliveryResult, Notification
from conduit.orchestration.workflow import Step, Workflow
from conduit.runtime import ConduitRuntime

# Monday
EPOCH = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now

    def set(self, at: datetime) -> None:
        self.now = at


class RecordingDispatcher:
    """Notification dispatcher that keeps what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> DeliveryResult:
        self.sent.append(notification)
        return DeliveryResult.ok(notification.channel)

    def templates(self) -> list[str]:
        return [n.template for n in self.sent]


def make_settings(**overrides: Any) -> ConduitSettings:
    values: dict[str, Any] = {
        "retry_max_retries": 2,
        "retry_initial_delay_seconds": 0.01,
        "retry_max_delay_seconds": 0.05,
        "retry_jitter": 0.0,
        "breaker_failure_threshold": 3,
        "breaker_reset_timeout_seconds": 0.05,
        "circuit_open_max_waits": 2,
        "cancel_grace_seconds": 0.1,
        "monitor_poll_interval_seconds": 1.0,
        "scheduler_interval_seconds": 60.0,
        "condition_scan_interval_seconds": 60.0,
        "maintenance_interval_seconds": 60.0,
        "alert_cooldown_seconds": 0.0,
        "sse_heartbeat_seconds": 0.2,
        "log_format": "console",
    }
    values.update(overrides)
    return ConduitSettings(**values)


def linear_workflow(workflow_id: str = "wf-linear", actions: tuple[str, ...] = ("a", "b", "c"), **kwargs: Any) -> Workflow:
    """Workflow whose steps run one after another, step ids equal action names."""
    steps = []
    previous: str | None = None
    for action in actions:
        steps.append(Step(id=action, action=action, depends_on=(previous,) if previous else ()))
        previous = action
    return Workflow(id=workflow_id, name=workflow_id, steps=steps, **kwargs)


@pytest.fixture
def settings() -> ConduitSettings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def executor() -> RegistryStepExecutor:
    """Executor with echo handlers for actions a, b and c."""
    executor = RegistryStepExecutor()
    for name in ("a", "b", "c"):
        executor.register(name, lambda input, ctx, name=name: {"step": name})
    return executor


@pytest_asyncio.fixture
async def runtime(settings, executor, dispatcher):
    """Started runtime without background loops."""
    rt = ConduitRuntime(settings, executor=executor, notifier=dispatcher)
    await rt.start(background=False)
    yield rt
    await rt.stop()


@pytest.fixture
def settings_factory():
    """Build fast settings with overrides."""
    return make_settings


@pytest.fixture
def workflow_factory():
    """Build linear workflows."""
    return linear_workflow


@pytest.fixture
def clock_factory():
    return FakeClock


@pytest_asyncio.fixture
async def runtime_factory(executor, dispatcher):
    """Build started runtimes with custom settings; all are stopped on teardown."""
    started: list[ConduitRuntime] = []

    async def build(settings: ConduitSettings | None = None, step_executor: Any = None, **kwargs: Any) -> ConduitRuntime:
        rt = ConduitRuntime(
            settings or make_settings(),
            executor=step_executor or executor,
            notifier=dispatcher,
            **kwargs,
        )
        await rt.start(background=False)
        started.append(rt)
        return rt

    yield build
    for rt in started:
        await rt.stop()


async def until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def eventually():
    """Async polling helper: ``await eventually(lambda: ...)``."""
    return until
