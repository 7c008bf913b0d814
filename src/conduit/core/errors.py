"""
Structured error types for the conduit execution core.

Errors fall into four families, and each family has a fixed place where
it is handled:

    ┌──────────────────────────────────────────────────────────────────┐
    │                          ConduitError                             │
    │          (kind, code, retry_after, context, cause)                │
    ├──────────────────────────────────────────────────────────────────┤
    │  ConfigurationError   rejected synchronously at create/update     │
    │    TriggerConfigError, WorkflowDefinitionError                    │
    │                                                                   │
    │  StepError            raised by step executors, recovered         │
    │    TransientStepError, StepTimeoutError, RateLimitedError,        │
    │    StepAuthorizationError, StepValidationError,                   │
    │    PermanentStepError, ExternalServiceError                       │
    │                                                                   │
    │  ResourceError        short-circuit without consuming a retry     │
    │    CircuitOpenError, QueueBacklogError                            │
    │                                                                   │
    │  SystemicError        fatal to the whole engine                   │
    │    PersistenceError, EngineHaltedError                            │
    └──────────────────────────────────────────────────────────────────┘

Plus the API-facing families (``NotFoundError``, ``ConflictError`` and
friends, ``WebhookRejectedError``) whose ``code`` maps onto an HTTP
status in :mod:`conduit.api.middleware.errors`.

Examples:
    >>> error = RateLimitedError("429 from ledger API", retry_after=30)
    >>> error.kind
    <ErrorKind.RATE_LIMIT: 'rate_limit'>
    >>> error.with_context(workflow_id="wf-1", step_id="post").to_dict()["context"]
    {'workflow_id': 'wf-1', 'step_id': 'post'}

Tags:
    error-handling, exception-hierarchy, retry-logic, conduit-core
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classified kind of a step failure.

    The first four plus ``UNKNOWN`` are retryable under the default
    policy; ``VALIDATION`` and ``PERMANENT`` never are.
    """

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    PERMANENT = "permanent"
    EXTERNAL_SERVICE = "external_service"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        workflow_id: Workflow the failure belongs to
        step_id: Step within the workflow
        execution_id: Execution identifier
        trigger_id: Trigger that produced the execution
        http_status: HTTP status code if the failure came from an outbound call
        metadata: Additional key-value pairs
    """

    workflow_id: str | None = None
    step_id: str | None = None
    execution_id: str | None = None
    trigger_id: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging (non-None fields only)."""
        result = {}
        for key in ["workflow_id", "step_id", "execution_id", "trigger_id", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ConduitError(Exception):
    """Base exception for all conduit errors.

    Subclasses set ``default_kind`` (how the resilience layer classifies
    the failure if it escapes a step) and ``code`` (how the API layer
    renders it).
    """

    default_kind: ErrorKind = ErrorKind.UNKNOWN
    code: str = "INTERNAL"

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ConduitError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "kind": self.kind.value,
            "code": self.code,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value})"


# =============================================================================
# CONFIGURATION ERRORS (rejected at creation time)
# =============================================================================


class ConfigurationError(ConduitError):
    """Invalid trigger, schedule or workflow definition."""

    default_kind = ErrorKind.VALIDATION
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, *, field_errors: list[dict[str, str]] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field_errors = field_errors or []


class TriggerConfigError(ConfigurationError):
    """Trigger or schedule configuration failed validation."""


class WorkflowDefinitionError(ConfigurationError):
    """Workflow graph is malformed (unknown dependency, cycle, ...)."""


# =============================================================================
# LOOKUP / STATE CONFLICTS
# =============================================================================


class NotFoundError(ConduitError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"


class ConflictError(ConduitError):
    """Operation conflicts with the current state of a record."""

    code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    """Raised when an illegal status transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class NotCancellableError(ConflictError):
    """Execution has a step inside a non-cancellable critical section."""

    code = "NOT_CANCELLABLE"


class WorkflowImmutableError(ConflictError):
    """Workflow is referenced by an execution and can no longer be edited."""


class DeadLetterStateError(ConflictError):
    """Dead-letter action is not valid for the entry's current status."""


class VersionConflictError(ConflictError):
    """Optimistic version check failed on a row update."""


# =============================================================================
# STEP ERRORS (raised by step executors, recovered by the resilience layer)
# =============================================================================


class StepError(ConduitError):
    """Failure raised from inside a step, pre-classified by its type."""

    code = "STEP_FAILED"


class TransientStepError(StepError):
    """Temporary condition, likely to succeed on retry."""

    default_kind = ErrorKind.TRANSIENT


class StepTimeoutError(StepError):
    """Step exceeded its timeout."""

    default_kind = ErrorKind.TIMEOUT


class RateLimitedError(StepError):
    """Downstream rate limit hit; ``retry_after`` carries the hint."""

    default_kind = ErrorKind.RATE_LIMIT


class StepAuthorizationError(StepError):
    """Credentials rejected by a downstream system."""

    default_kind = ErrorKind.AUTHORIZATION


class StepValidationError(StepError):
    """Step input failed validation; retrying cannot help."""

    default_kind = ErrorKind.VALIDATION


class PermanentStepError(StepError):
    """Permanent failure (resource gone, unsupported operation)."""

    default_kind = ErrorKind.PERMANENT


class ExternalServiceError(StepError):
    """External service reported an internal failure."""

    default_kind = ErrorKind.EXTERNAL_SERVICE


class ExecutionCancelledError(ConduitError):
    """Raised at a step checkpoint once cancellation has been requested."""

    code = "CANCELLED"


# =============================================================================
# RESOURCE ERRORS (short-circuit, never consume a retry)
# =============================================================================


class ResourceError(ConduitError):
    """Execution short-circuited by a guarded resource."""

    default_kind = ErrorKind.TRANSIENT
    code = "UNAVAILABLE"


class CircuitOpenError(ResourceError):
    """Circuit breaker for (workflow, step) is open."""

    def __init__(self, workflow_id: str, step_id: str, retry_at: Any = None, probe_in_flight: bool = False) -> None:
        self.workflow_id = workflow_id
        self.step_id = step_id
        self.retry_at = retry_at
        # half-open and the probe slot is taken
        self.probe_in_flight = probe_in_flight
        super().__init__(
            f"Circuit open for {workflow_id}/{step_id}",
            context=ErrorContext(workflow_id=workflow_id, step_id=step_id),
        )


class QueueBacklogError(ResourceError):
    """Pending-execution queue is over capacity."""

    code = "QUOTA_EXCEEDED"


# =============================================================================
# SYSTEMIC ERRORS (fatal to the engine)
# =============================================================================


class SystemicError(ConduitError):
    """Engine-wide failure; halts trigger evaluation."""

    code = "UNAVAILABLE"


class PersistenceError(SystemicError):
    """The persistence layer is unavailable."""


class EngineHaltedError(SystemicError):
    """The engine halted after a systemic failure and refuses new work."""


# =============================================================================
# WEBHOOK GATEWAY
# =============================================================================


class WebhookRejectedError(ConduitError):
    """Inbound webhook request failed token, authentication or IP checks."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str, *, code: str = "UNAUTHORIZED", log_id: str | None = None):
        super().__init__(message, kind=ErrorKind.AUTHORIZATION)
        self.code = code
        self.log_id = log_id


__all__ = [
    "ErrorKind",
    "ErrorContext",
    "ConduitError",
    "ConfigurationError",
    "TriggerConfigError",
    "WorkflowDefinitionError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "NotCancellableError",
    "WorkflowImmutableError",
    "DeadLetterStateError",
    "VersionConflictError",
    "StepError",
    "TransientStepError",
    "StepTimeoutError",
    "RateLimitedError",
    "StepAuthorizationError",
    "StepValidationError",
    "PermanentStepError",
    "ExternalServiceError",
    "ExecutionCancelledError",
    "ResourceError",
    "CircuitOpenError",
    "QueueBacklogError",
    "SystemicError",
    "PersistenceError",
    "EngineHaltedError",
    "WebhookRejectedError",
]
