"""
Resilience data model: retry policy, execution errors, breaker state, decisions.

Manifesto:
    Failure handling is a state machine over two shared rows: the
    ExecutionError for a failing (execution, step) and the
    CircuitBreakerState for a (workflow, step). Both carry a ``version``
    so writers can detect lost updates; both are mutated only by the
    resilience manager under a per-key lock.

Decisions returned by ``handle_failure`` form a closed tagged union:

    Retry(delay)       step re-runs after the backoff delay
    CircuitOpen(at)    execution waits for the breaker's reset instant
    DeadLetter(entry)  execution is parked for manual handling

Tags:
    conduit-core, resilience, retry, circuit-breaker, state-machine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from conduit.core.config import ConduitSettings, HalfOpenPolicy
from conduit.core.errors import ErrorKind, InvalidTransitionError

DEFAULT_RETRY_ON = frozenset(
    {ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.AUTHORIZATION}
)
DEFAULT_NO_RETRY = frozenset({ErrorKind.VALIDATION, ErrorKind.PERMANENT})


# =============================================================================
# POLICIES
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Retry-with-backoff policy.

    A retry is attempted only if retry_count < max_retries, the kind is
    not in ``no_retry``, and the kind is in ``retry_on`` or is UNKNOWN.

    Attributes:
        max_retries: Retries allowed after the first failure
        initial_delay_seconds: Delay before the first retry
        multiplier: Growth factor per retry
        max_delay_seconds: Cap applied after jitter
        jitter: Fractional jitter (0.1 = ±10%)
        retry_on: Kinds that retry
        no_retry: Kinds that never retry
    """

    max_retries: int = 3
    initial_delay_seconds: float = 5.0
    multiplier: float = 2.0
    max_delay_seconds: float = 300.0
    jitter: float = 0.1
    retry_on: frozenset[ErrorKind] = DEFAULT_RETRY_ON
    no_retry: frozenset[ErrorKind] = DEFAULT_NO_RETRY

    def allows(self, kind: ErrorKind) -> bool:
        """Whether ``kind`` is retryable under this policy (ignoring counts)."""
        if kind in self.no_retry:
            return False
        return kind in self.retry_on or kind == ErrorKind.UNKNOWN

    @classmethod
    def from_settings(cls, settings: ConduitSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.retry_max_retries,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        """Build from a definition mapping.

        Accepts ``initial_delay_ms`` as an alternative to
        ``initial_delay_seconds``.
        """
        initial = data.get("initial_delay_seconds")
        if initial is None and "initial_delay_ms" in data:
            initial = data["initial_delay_ms"] / 1000.0
        max_delay = data.get("max_delay_seconds")
        if max_delay is None and "max_delay_ms" in data:
            max_delay = data["max_delay_ms"] / 1000.0
        return cls(
            max_retries=data.get("max_retries", 3),
            initial_delay_seconds=initial if initial is not None else 5.0,
            multiplier=data.get("multiplier", 2.0),
            max_delay_seconds=max_delay if max_delay is not None else 300.0,
            jitter=data.get("jitter", 0.1),
            retry_on=frozenset(ErrorKind(k) for k in data.get("retry_on", DEFAULT_RETRY_ON)),
            no_retry=frozenset(ErrorKind(k) for k in data.get("no_retry", DEFAULT_NO_RETRY)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "initial_delay_seconds": self.initial_delay_seconds,
            "multiplier": self.multiplier,
            "max_delay_seconds": self.max_delay_seconds,
            "jitter": self.jitter,
            "retry_on": sorted(k.value for k in self.retry_on),
            "no_retry": sorted(k.value for k in self.no_retry),
        }


@dataclass(frozen=True)
class BreakerPolicy:
    """Circuit breaker thresholds for one (workflow, step)."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    half_open_max_calls: int = 1
    half_open_policy: HalfOpenPolicy = HalfOpenPolicy.IMMEDIATE

    @classmethod
    def from_settings(cls, settings: ConduitSettings) -> BreakerPolicy:
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout_seconds=settings.breaker_reset_timeout_seconds,
            half_open_max_calls=settings.breaker_half_open_max_calls,
            half_open_policy=settings.breaker_half_open_policy,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BreakerPolicy:
        return cls(
            failure_threshold=data.get("failure_threshold", 5),
            reset_timeout_seconds=data.get("reset_timeout_seconds", 60.0),
            half_open_max_calls=data.get("half_open_max_calls", 1),
            half_open_policy=HalfOpenPolicy(data.get("half_open_policy", "immediate")),
        )


# =============================================================================
# EXECUTION ERROR
# =============================================================================


class ErrorStatus(str, Enum):
    """Status of an execution error record.

    ESCALATED marks an error whose step is parked behind an open circuit
    breaker rather than in its own retry loop.
    """

    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    DEAD_LETTER = "dead_letter"


VALID_ERROR_TRANSITIONS: dict[ErrorStatus, set[ErrorStatus]] = {
    ErrorStatus.PENDING: {ErrorStatus.RETRYING, ErrorStatus.RESOLVED, ErrorStatus.ESCALATED, ErrorStatus.DEAD_LETTER},
    ErrorStatus.RETRYING: {ErrorStatus.RETRYING, ErrorStatus.RESOLVED, ErrorStatus.ESCALATED, ErrorStatus.DEAD_LETTER},
    ErrorStatus.ESCALATED: {ErrorStatus.ESCALATED, ErrorStatus.RETRYING, ErrorStatus.RESOLVED, ErrorStatus.DEAD_LETTER},
    ErrorStatus.DEAD_LETTER: {ErrorStatus.RESOLVED},
    ErrorStatus.RESOLVED: set(),
}


@dataclass
class ExecutionError:
    """The single active error record for a failing (execution, step).

    A new failure of the same step updates this row in place.
    """

    id: str
    organization_id: str
    execution_id: str
    workflow_id: str
    step_id: str
    kind: ErrorKind
    message: str
    max_retries: int
    retry_count: int = 0
    status: ErrorStatus = ErrorStatus.PENDING
    error_type: str | None = None
    http_status: int | None = None
    next_retry_at: datetime | None = None
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None
    version: int = 0

    def transition(self, target: ErrorStatus) -> None:
        if target not in VALID_ERROR_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value, "ErrorStatus")
        self.status = target

    @property
    def is_active(self) -> bool:
        return self.status in (ErrorStatus.PENDING, ErrorStatus.RETRYING, ErrorStatus.ESCALATED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "kind": self.kind.value,
            "message": self.message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status": self.status.value,
            "error_type": self.error_type,
            "http_status": self.http_status,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "resolution": self.resolution,
        }


# =============================================================================
# CIRCUIT BREAKER STATE
# =============================================================================


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing fast
    HALF_OPEN = "half_open"  # Probing recovery


def breaker_key(workflow_id: str, step_id: str) -> str:
    return f"{workflow_id}:{step_id}"


@dataclass
class CircuitBreakerState:
    """Exactly one row per (workflow, step)."""

    id: str
    organization_id: str
    workflow_id: str
    step_id: str
    failure_threshold: int
    reset_timeout_seconds: float
    half_open_max_calls: int = 1
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    half_open_calls: int = 0
    opened_at: datetime | None = None
    half_opened_at: datetime | None = None
    last_failure_at: datetime | None = None
    version: int = 0

    @property
    def reset_at(self) -> datetime | None:
        """Instant after which the next call may probe (open state only)."""
        if self.opened_at is None:
            return None
        return self.opened_at + timedelta(seconds=self.reset_timeout_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout_seconds,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "half_opened_at": self.half_opened_at.isoformat() if self.half_opened_at else None,
        }


# =============================================================================
# DECISIONS
# =============================================================================


@dataclass(frozen=True)
class Retry:
    """Re-run the step after ``delay_seconds``."""

    delay_seconds: float
    retry_count: int
    error_id: str
    next_retry_at: datetime | None = None


@dataclass(frozen=True)
class CircuitOpen:
    """Breaker is open; wait until ``retry_at`` and probe again."""

    retry_at: datetime | None
    error_id: str
    waits: int


@dataclass(frozen=True)
class DeadLetter:
    """Retries exhausted or error non-retryable."""

    entry_id: str
    error_id: str
    reason: str


FailureDecision = Retry | CircuitOpen | DeadLetter


@dataclass
class FailureContext:
    """Per-call information the engine hands to ``handle_failure``."""

    attempt: int = 1
    circuit_waits: int = 0
    prior_outputs: dict[str, Any] = field(default_factory=dict)
    step_input: dict[str, Any] = field(default_factory=dict)


__all__ = [
    "DEFAULT_RETRY_ON",
    "DEFAULT_NO_RETRY",
    "RetryPolicy",
    "BreakerPolicy",
    "ErrorStatus",
    "VALID_ERROR_TRANSITIONS",
    "ExecutionError",
    "CircuitState",
    "CircuitBreakerState",
    "breaker_key",
    "Retry",
    "CircuitOpen",
    "DeadLetter",
    "FailureDecision",
    "FailureContext",
]
