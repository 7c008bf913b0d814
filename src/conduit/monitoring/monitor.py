"""
Execution monitor - the live view over lifecycle events.

Manifesto:
    Observers should not query the engine to learn what is happening.
    The monitor subscribes to every execution and step event and keeps a
    cached view that is updated inside the publish call, so the view is
    never behind the events a subscriber has already seen. Aggregates the
    events cannot carry (queue depth, oldest pending age) are polled on a
    fixed interval of at most five seconds.

Architecture:
    ::

        EventBus ── execution.* / step.* ──► handle_event
                                               ├── ExecutionView (per execution)
                                               ├── WorkflowStats (rolling window)
                                               ├── CompletionRate
                                               └── listeners (AlertEvaluator)

        poll loop ──► poll() ──► QueueSnapshot ──► queue.snapshot event
                                               └── snapshot listeners

Tags:
    conduit-core, monitoring, live-view, metrics
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from conduit.core.config import ConduitSettings
from conduit.core.events import Event, EventBus, EventTypes
from conduit.core.logging import get_logger
from conduit.core.timestamps import Clock, utc_now

from .models import ExecutionView, QueueSnapshot
from .rolling import CompletionRate, RollingWindow, WorkflowStats

if TYPE_CHECKING:
    from conduit.execution.engine import QueueDepth

logger = get_logger(__name__)

QueueSource = Callable[[], "QueueDepth"]
EventListener = Callable[[Event, "ExecutionView | None"], Awaitable[None]]
SnapshotListener = Callable[[QueueSnapshot], Awaitable[None]]

_TERMINAL = frozenset({"completed", "failed", "cancelled"})
_STATUS_BY_EVENT = {
    EventTypes.EXECUTION_CREATED: "pending",
    EventTypes.EXECUTION_STARTED: "running",
    EventTypes.EXECUTION_WAITING: "waiting",
    EventTypes.EXECUTION_RESUMED: "running",
    EventTypes.EXECUTION_COMPLETED: "completed",
    EventTypes.EXECUTION_FAILED: "failed",
    EventTypes.EXECUTION_CANCELLED: "cancelled",
}


class ExecutionMonitor:
    """Live per-execution and per-workflow view."""

    def __init__(
        self,
        bus: EventBus,
        settings: ConduitSettings,
        queue_source: QueueSource | None = None,
        clock: Clock = utc_now,
        max_tracked: int = 10_000,
    ) -> None:
        self._bus = bus
        self._settings = settings
        self._queue_source = queue_source
        self._clock = clock
        self._max_tracked = max_tracked
        self._views: OrderedDict[str, ExecutionView] = OrderedDict()
        self._workflows: dict[str, WorkflowStats] = {}
        self._completion_rate = CompletionRate()
        self._listeners: list[EventListener] = []
        self._snapshot_listeners: list[SnapshotListener] = []
        self._subscriptions: list[str] = []
        self._last_snapshot: QueueSnapshot | None = None

    def set_queue_source(self, source: QueueSource) -> None:
        self._queue_source = source

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    async def attach(self) -> None:
        if self._subscriptions:
            return
        for pattern in ("execution.*", "step.*"):
            self._subscriptions.append(await self._bus.subscribe(pattern, self.handle_event))
        logger.debug("monitor_attached")

    async def detach(self) -> None:
        for sub_id in self._subscriptions:
            await self._bus.unsubscribe(sub_id)
        self._subscriptions.clear()

    # =========================================================================
    # Event handling
    # =========================================================================

    async def handle_event(self, event: Event) -> None:
        view = self._apply(event)
        for listener in self._listeners:
            try:
                await listener(event, view)
            except Exception as e:
                logger.warning("monitor_listener_failed", event_type=event.event_type, error=str(e))

    def _apply(self, event: Event) -> ExecutionView | None:
        execution_id = event.execution_id
        workflow_id = event.workflow_id
        if execution_id is None or workflow_id is None:
            return None
        payload = event.payload

        view = self._views.get(execution_id)
        if view is None:
            view = ExecutionView(
                execution_id=execution_id,
                workflow_id=workflow_id,
                status=payload.get("status", "pending"),
                trigger_id=payload.get("trigger_id"),
                organization_id=event.organization_id,
            )
            self._views[execution_id] = view
            self._evict()
        elif view.status in _TERMINAL:
            return view

        view.status = _STATUS_BY_EVENT.get(event.event_type, payload.get("status", view.status))
        view.progress = payload.get("progress", view.progress)
        view.current_step = payload.get("current_step")
        view.retry_count = payload.get("retry_count", view.retry_count)
        # observed on the monitor's clock, the same one rate windows are read with
        now = self._clock()
        view.updated_at = now

        if view.status in _TERMINAL:
            view.current_step = None
            view.duration_seconds = payload.get("duration_seconds")
            self.stats_for(workflow_id).record(view.status, now, view.duration_seconds)
            self._completion_rate.record(now)
        return view

    def _evict(self) -> None:
        """Drop the oldest finished views once over capacity."""
        if len(self._views) <= self._max_tracked:
            return
        for execution_id in list(self._views):
            if len(self._views) <= self._max_tracked:
                break
            if self._views[execution_id].status in _TERMINAL:
                del self._views[execution_id]

    # =========================================================================
    # Views
    # =========================================================================

    def stats_for(self, workflow_id: str) -> WorkflowStats:
        stats = self._workflows.get(workflow_id)
        if stats is None:
            stats = WorkflowStats(workflow_id, RollingWindow(self._settings.monitor_window_seconds))
            self._workflows[workflow_id] = stats
        return stats

    def execution_view(self, execution_id: str) -> ExecutionView | None:
        return self._views.get(execution_id)

    def list_views(self, workflow_id: str | None = None, active_only: bool = False) -> list[ExecutionView]:
        views = [v for v in self._views.values() if workflow_id is None or v.workflow_id == workflow_id]
        if active_only:
            views = [v for v in views if v.status not in _TERMINAL]
        return views

    def workflow_stats(self, workflow_id: str | None = None) -> list[dict[str, Any]]:
        now = self._clock()
        if workflow_id is not None:
            return [self.stats_for(workflow_id).to_dict(now)]
        return [s.to_dict(now) for s in self._workflows.values()]

    # =========================================================================
    # Queue polling
    # =========================================================================

    def queue_snapshot(self) -> QueueSnapshot:
        now = self._clock()
        if self._queue_source is None:
            return QueueSnapshot(0, 0, {}, None, self._completion_rate.per_minute(now), now)
        depth = self._queue_source()
        oldest_age = None
        if depth.oldest_pending_at is not None:
            oldest_age = max(0.0, (now - depth.oldest_pending_at).total_seconds())
        return QueueSnapshot(
            pending=depth.pending,
            running=depth.running,
            pending_by_priority=dict(depth.pending_by_priority),
            oldest_pending_age_seconds=oldest_age,
            completions_per_minute=self._completion_rate.per_minute(now),
            captured_at=now,
        )

    @property
    def last_snapshot(self) -> QueueSnapshot | None:
        return self._last_snapshot

    async def poll(self) -> QueueSnapshot:
        """One poll tick: refresh queue depth and push it to subscribers."""
        snapshot = self.queue_snapshot()
        self._last_snapshot = snapshot
        await self._bus.publish(
            Event(event_type=EventTypes.QUEUE_SNAPSHOT, source="monitoring.monitor", payload=snapshot.to_dict())
        )
        for listener in self._snapshot_listeners:
            try:
                await listener(snapshot)
            except Exception as e:
                logger.warning("snapshot_listener_failed", error=str(e))
        return snapshot

    def overview(self) -> dict[str, Any]:
        snapshot = self._last_snapshot or self.queue_snapshot()
        active = self.list_views(active_only=True)
        return {
            "active_executions": [v.to_dict() for v in active],
            "queue": snapshot.to_dict(),
            "workflows": self.workflow_stats(),
        }


__all__ = ["ExecutionMonitor", "QueueSource", "EventListener", "SnapshotListener"]
