"""Cron next-run calculation.

Expressions are evaluated against the schedule's own IANA timezone. The wall
clock is advanced with croniter and only then anchored to the zone, so DST
offsets are whatever applies at the computed instant rather than at the time
the schedule was created.
"""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadCronError, CroniterBadDateError, CroniterNotAlphaError, croniter

from .logging_utils import InvalidScheduleConfig, TriggerLogger

logger = TriggerLogger(__name__)

_CRON_FIELD_COUNTS = (5, 6)
# Upper bound on wall-clock candidates skipped because they do not advance in UTC
_MAX_DST_SKIPS = 4


def resolve_timezone(timezone: str | None) -> ZoneInfo:
    """Return the zone for an IANA name.

    Raises:
        InvalidScheduleConfig: If the name is empty or unknown.
    """
    if not timezone or not timezone.strip():
        raise InvalidScheduleConfig("Timezone is required")
    try:
        return ZoneInfo(timezone.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleConfig(f"Unknown timezone: {timezone}", timezone=timezone) from e


def _check_expression(cron_expr: str | None) -> str:
    if not cron_expr or not cron_expr.strip():
        raise InvalidScheduleConfig("Cron expression is required")
    expr = " ".join(cron_expr.split())
    if len(expr.split(" ")) not in _CRON_FIELD_COUNTS:
        raise InvalidScheduleConfig(
            f"Cron expression must have 5 or 6 fields: {cron_expr}", cron_expr=cron_expr
        )
    if not croniter.is_valid(expr):
        raise InvalidScheduleConfig(f"Invalid cron expression: {cron_expr}", cron_expr=cron_expr)
    return expr


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def get_next_run_at(cron_expr: str, timezone: str, from_: datetime) -> datetime:
    """Compute the first fire time strictly after ``from_``.

    Args:
        cron_expr: Five or six field cron expression.
        timezone: IANA timezone the expression is evaluated in.
        from_: Reference instant; naive values are treated as UTC.

    Returns:
        Aware UTC datetime of the next fire.

    Raises:
        InvalidScheduleConfig: If the expression or timezone cannot be resolved,
            or the expression never fires.
    """
    expr = _check_expression(cron_expr)
    zone = resolve_timezone(timezone)
    start = _as_utc(from_)

    wall_clock = start.astimezone(zone).replace(tzinfo=None)
    try:
        iterator = croniter(expr, wall_clock)
        for _ in range(_MAX_DST_SKIPS + 1):
            candidate = iterator.get_next(datetime)
            next_run = candidate.replace(tzinfo=zone).astimezone(UTC)
            if next_run > start:
                return next_run
    except (CroniterBadCronError, CroniterNotAlphaError) as e:
        raise InvalidScheduleConfig(f"Invalid cron expression: {cron_expr}", cron_expr=cron_expr) from e
    except CroniterBadDateError as e:
        raise InvalidScheduleConfig(
            f"Cron expression never fires: {cron_expr}", cron_expr=cron_expr
        ) from e

    # Only reachable when every candidate lands behind ``start`` in UTC
    logger.warning(
        "Cron candidates did not advance past reference time",
        cron_expr=cron_expr,
        timezone=timezone,
    )
    return get_next_run_at(cron_expr, timezone, start + timedelta(hours=1))


def validate_schedule(cron_expr: str, timezone: str, now: datetime | None = None) -> datetime:
    """Validate a cron/timezone pair and return its next fire time from ``now``.

    Raises:
        InvalidScheduleConfig: If the pair cannot produce a fire time.
    """
    return get_next_run_at(cron_expr, timezone, now or datetime.now(UTC))


def is_valid_schedule(cron_expr: str, timezone: str) -> bool:
    """Boolean form of :func:`validate_schedule`."""
    try:
        validate_schedule(cron_expr, timezone)
    except InvalidScheduleConfig:
        return False
    return True
