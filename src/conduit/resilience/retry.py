"""Exponential backoff with jitter.

Example:
    >>> from conduit.resilience.models import RetryPolicy
    >>> from conduit.resilience.retry import ExponentialBackoff
    >>>
    >>> backoff = ExponentialBackoff(RetryPolicy(initial_delay_seconds=5.0, jitter=0.0))
    >>> [backoff.next_delay(n) for n in range(3)]
    [5.0, 10.0, 20.0]
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from conduit.core.errors import ErrorKind

from .models import RetryPolicy


@dataclass
class ExponentialBackoff:
    """Backoff schedule for one retry policy.

    Delay = min(initial * multiplier ** retry_count, max_delay), then
    jittered by ±``policy.jitter`` and capped again at ``max_delay``.
    """

    policy: RetryPolicy
    rng: random.Random = field(default_factory=random.Random)

    def base_delay(self, retry_count: int) -> float:
        """Un-jittered delay; non-decreasing in ``retry_count``."""
        return min(
            self.policy.initial_delay_seconds * (self.policy.multiplier**retry_count),
            self.policy.max_delay_seconds,
        )

    def next_delay(self, retry_count: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``retry_count + 1``.

        Args:
            retry_count: Retries already made (0 = first retry)
            retry_after: Server-provided minimum wait (rate limits)
        """
        delay = self.base_delay(retry_count)
        if self.policy.jitter:
            jitter_amount = delay * self.policy.jitter
            delay += self.rng.uniform(-jitter_amount, jitter_amount)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(0.0, min(delay, self.policy.max_delay_seconds))

    def should_retry(self, retry_count: int, kind: ErrorKind) -> bool:
        """retry_count < max_retries and the kind is retryable."""
        if retry_count >= self.policy.max_retries:
            return False
        return self.policy.allows(kind)


__all__ = ["ExponentialBackoff"]
