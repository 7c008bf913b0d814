"""Domain and lifecycle events shared between conduit components.

Producers (engine, trigger evaluator, resilience manager, monitor) emit
:class:`Event` records; consumers attach in one of two ways:

``subscribe(pattern, handler)``
    In-process handler, awaited during ``publish``. The monitor, alert
    evaluation and event triggers attach this way so their view of the
    world moves in lockstep with emission.

``open_stream(pattern, predicate, maxsize)``
    Bounded buffer for out-of-process readers (SSE clients). A full
    buffer discards its oldest event and counts the loss; producers are
    never made to wait for a reader.

Patterns are ``*``, an exact type, or ``<prefix>.*``.

Modules
-------
memory      InMemoryEventBus (asyncio, single process)
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from conduit.core.timestamps import new_id, utc_now

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "EventFilter",
    "EventStream",
    "EventTypes",
    "pattern_matches",
]


def pattern_matches(pattern: str, event_type: str) -> bool:
    """``*`` matches anything; ``a.*`` matches ``a.b`` but not ``ab.c``."""
    if pattern in ("*", event_type):
        return True
    return pattern.endswith(".*") and event_type.startswith(pattern[:-1])


@dataclass
class Event:
    """One thing that happened.

    ``correlation_id`` carries the execution id when there is one;
    ``workflow_id`` and ``execution_id`` are read from the payload so
    producers only have to set them once.
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    correlation_id: str | None = None
    organization_id: str | None = None
    event_id: str = field(default_factory=lambda: new_id("evt"))

    def matches(self, pattern: str) -> bool:
        return pattern_matches(pattern, self.event_type)

    @property
    def workflow_id(self) -> str | None:
        return self.payload.get("workflow_id")

    @property
    def execution_id(self) -> str | None:
        return self.payload.get("execution_id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "organization_id": self.organization_id,
            "payload": self.payload,
        }


class EventTypes:
    """Event type names emitted by the core."""

    # executions
    EXECUTION_CREATED = "execution.created"
    EXECUTION_STARTED = "execution.started"
    EXECUTION_WAITING = "execution.waiting"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"
    EXECUTION_CANCELLED = "execution.cancelled"

    # steps
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    STEP_RETRYING = "step.retrying"
    STEP_SKIPPED = "step.skipped"

    # resilience
    ERROR_RECORDED = "error.recorded"
    ERROR_DEAD_LETTERED = "error.dead_lettered"
    CIRCUIT_OPENED = "circuit.opened"
    CIRCUIT_HALF_OPENED = "circuit.half_opened"
    CIRCUIT_CLOSED = "circuit.closed"
    DLQ_ENTRY_CREATED = "dlq.entry_created"
    DLQ_ENTRY_PROCESSED = "dlq.entry_processed"
    DLQ_ENTRY_EXPIRED = "dlq.entry_expired"
    COMPENSATION_COMPLETED = "compensation.completed"

    # triggers
    TRIGGER_FIRED = "trigger.fired"
    SCHEDULE_MISSED = "schedule.missed"

    # monitoring
    ALERT_FIRED = "alert.fired"
    ALERT_ACKNOWLEDGED = "alert.acknowledged"
    ALERT_RESOLVED = "alert.resolved"
    QUEUE_SNAPSHOT = "queue.snapshot"
    ENGINE_HALTED = "engine.halted"


EventHandler = Callable[[Event], Awaitable[None]]
EventFilter = Callable[[Event], bool]


@runtime_checkable
class EventStream(Protocol):
    subscription_id: str
    dropped: int

    def __aiter__(self) -> AsyncIterator[Event]: ...

    async def get(self, timeout: float | None = None) -> Event | None:
        """Next buffered event; ``None`` once ``timeout`` seconds pass."""
        ...

    async def close(self) -> None: ...


@runtime_checkable
class EventBus(Protocol):
    """What producers and consumers rely on; see the module docstring."""

    async def publish(self, event: Event) -> None: ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Attach ``handler`` to ``event_type``; returns an id for ``unsubscribe``."""
        ...

    async def open_stream(
        self,
        event_type: str = "*",
        predicate: EventFilter | None = None,
        maxsize: int | None = None,
    ) -> EventStream: ...

    async def unsubscribe(self, subscription_id: str) -> None: ...

    async def close(self) -> None:
        """Stop delivery and forget every subscriber."""
        ...
