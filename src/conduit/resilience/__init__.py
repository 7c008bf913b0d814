"""Error classification, retry backoff and circuit breakers.

``ResilienceManager`` lives in :mod:`conduit.resilience.manager` and is
imported from there; it depends on the dead-letter store, which itself
depends on the models re-exported here.
"""

from .circuit_breaker import CircuitBreakerManager
from .classifier import Classification, classify
from .models import (
    BreakerPolicy,
    CircuitBreakerState,
    CircuitOpen,
    CircuitState,
    DeadLetter,
    ErrorStatus,
    ExecutionError,
    FailureContext,
    FailureDecision,
    Retry,
    RetryPolicy,
)
from .retry import ExponentialBackoff

__all__ = [
    "BreakerPolicy",
    "CircuitBreakerManager",
    "CircuitBreakerState",
    "CircuitOpen",
    "CircuitState",
    "Classification",
    "DeadLetter",
    "ErrorStatus",
    "ExecutionError",
    "ExponentialBackoff",
    "FailureContext",
    "FailureDecision",
    "Retry",
    "RetryPolicy",
    "classify",
]
