"""Cron expression evaluation using croniter.

Next-run times are computed in the schedule's timezone and returned in
UTC. An optional ``is_eligible`` predicate (weekend / holiday calendar)
makes :func:`compute_next_run` advance past ineligible dates to the next
eligible fire time.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from conduit.core.errors import TriggerConfigError

# A daily schedule skipping a long holiday run needs at most a few dozen
# candidates; yearly schedules need one per year.
MAX_CANDIDATES = 1000


def resolve_timezone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TriggerConfigError(f"Unknown timezone: {timezone}", cause=e) from e


def validate_cron(expression: str) -> None:
    """Raise :class:`TriggerConfigError` unless ``expression`` is a valid cron."""
    if not expression or not croniter.is_valid(expression):
        raise TriggerConfigError(
            f"Invalid cron expression: {expression!r}",
            field_errors=[{"field": "cron_expression", "message": "invalid cron expression"}],
        )


def compute_next_run(
    cron_expression: str,
    after: datetime,
    timezone: str = "UTC",
    is_eligible: Callable[[date], bool] | None = None,
) -> datetime | None:
    """Next fire time strictly after ``after``, in UTC.

    Args:
        cron_expression: 5-part cron expression
        after: Compute the next run after this instant
        timezone: IANA timezone the expression is evaluated in
        is_eligible: Predicate on the local fire date; ineligible dates
            are skipped

    Returns:
        Next eligible run in UTC, or None if none found within
        ``MAX_CANDIDATES`` candidates
    """
    tz = resolve_timezone(timezone)
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    cron = croniter(cron_expression, after.astimezone(tz))
    for _ in range(MAX_CANDIDATES):
        candidate: datetime = cron.get_next(datetime)
        if is_eligible is None or is_eligible(candidate.date()):
            return candidate.astimezone(UTC)
    return None


__all__ = ["compute_next_run", "validate_cron", "resolve_timezone"]
