"""
Clock and id helpers shared by every component.

Rows are keyed ``<prefix>_<26 chars>``: 10 characters of millisecond
timestamp followed by 16 random ones, both in Crockford base32, so ids
sort by creation time (``exe_01J...``, ``dlq_01J...``, ``alt_01J...``).

Anything that measures elapsed time (breaker reset, alert cooldown,
schedule due checks, dead-letter retention) takes a ``clock`` argument
that defaults to :func:`utc_now`; tests pass a fake clock instead of
sleeping.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]

_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _base32(value: int, width: int) -> str:
    chars = [""] * width
    for i in range(width - 1, -1, -1):
        value, digit = divmod(value, 32)
        chars[i] = _CROCKFORD[digit]
    return "".join(chars)


def new_id(prefix: str) -> str:
    """Time-sortable id, e.g. ``new_id("exe")`` → ``exe_01J9Z3...``."""
    stamp = _base32(int(time.time() * 1000), 10)
    tail = "".join(secrets.choice(_CROCKFORD) for _ in range(16))
    return f"{prefix}_{stamp}{tail}"


__all__ = ["Clock", "utc_now", "new_id"]
