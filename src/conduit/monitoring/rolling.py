"""Rolling-window outcome counters for per-workflow aggregates.

Outcomes older than the window are pruned lazily on each read or write,
so memory is bounded by the number of outcomes inside the window.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any


@dataclass(frozen=True)
class Outcome:
    at: datetime
    succeeded: bool
    duration_seconds: float | None = None


@dataclass
class RollingWindow:
    """Terminal outcomes within the last ``window_seconds``."""

    window_seconds: float
    _outcomes: deque[Outcome] = field(default_factory=deque, repr=False)

    def record(self, outcome: Outcome) -> None:
        self._outcomes.append(outcome)
        self.prune(outcome.at)

    def prune(self, now: datetime) -> None:
        horizon = now - timedelta(seconds=self.window_seconds)
        while self._outcomes and self._outcomes[0].at < horizon:
            self._outcomes.popleft()

    def outcomes(self, now: datetime, window_seconds: float | None = None) -> list[Outcome]:
        """Outcomes inside ``window_seconds`` (at most the full window)."""
        self.prune(now)
        if window_seconds is None or window_seconds >= self.window_seconds:
            return list(self._outcomes)
        horizon = now - timedelta(seconds=window_seconds)
        return [o for o in self._outcomes if o.at >= horizon]

    def counts(self, now: datetime, window_seconds: float | None = None) -> tuple[int, int]:
        """(succeeded, failed) inside the window."""
        outcomes = self.outcomes(now, window_seconds)
        failed = sum(1 for o in outcomes if not o.succeeded)
        return len(outcomes) - failed, failed

    def failure_rate(self, now: datetime, window_seconds: float | None = None) -> tuple[float, int]:
        """(failure ratio, sample size); ratio is 0.0 for an empty window."""
        succeeded, failed = self.counts(now, window_seconds)
        total = succeeded + failed
        return (failed / total if total else 0.0), total


@dataclass
class WorkflowStats:
    """Lifetime and rolling aggregates for one workflow."""

    workflow_id: str
    window: RollingWindow
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    consecutive_failures: int = 0
    last_status: str | None = None
    last_finished_at: datetime | None = None

    def record(self, status: str, at: datetime, duration_seconds: float | None) -> None:
        self.last_status = status
        self.last_finished_at = at
        if status == "cancelled":
            self.cancelled += 1
            return
        succeeded = status == "completed"
        if succeeded:
            self.completed += 1
            self.consecutive_failures = 0
        else:
            self.failed += 1
            self.consecutive_failures += 1
        self.window.record(Outcome(at=at, succeeded=succeeded, duration_seconds=duration_seconds))

    def to_dict(self, now: datetime) -> dict[str, Any]:
        succeeded, failed = self.window.counts(now)
        rate, samples = self.window.failure_rate(now)
        durations = [o.duration_seconds for o in self.window.outcomes(now) if o.duration_seconds is not None]
        return {
            "workflow_id": self.workflow_id,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "consecutive_failures": self.consecutive_failures,
            "last_status": self.last_status,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "window": {
                "seconds": self.window.window_seconds,
                "succeeded": succeeded,
                "failed": failed,
                "failure_rate": round(rate, 4),
                "samples": samples,
                "avg_duration_seconds": round(sum(durations) / len(durations), 3) if durations else None,
            },
        }


class CompletionRate:
    """Terminal executions per minute over a short trailing window."""

    def __init__(self, window_seconds: float = 300.0) -> None:
        self.window_seconds = window_seconds
        self._times: deque[datetime] = deque()

    def record(self, at: datetime) -> None:
        self._times.append(at)

    def per_minute(self, now: datetime) -> float:
        horizon = now - timedelta(seconds=self.window_seconds)
        while self._times and self._times[0] < horizon:
            self._times.popleft()
        return round(len(self._times) / (self.window_seconds / 60.0), 3)


__all__ = ["Outcome", "RollingWindow", "WorkflowStats", "CompletionRate"]
