"""Named-interval cron subset used by scheduled jobs.

Supported expressions::

    @yearly / @annually   start of next year
    @monthly              start of next month
    @weekly               next Sunday at midnight
    @daily                next midnight
    @hourly               start of next hour
    @every <duration>     base time + duration, e.g. ``@every 90m``,
                          ``@every 1h30m`` or ``@every 7d``

Boundaries are computed in the base time's own time zone. Standard five to
seven field expressions are recognised and rejected.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from croniter import croniter

EVERY_PREFIX = "@every "

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DAYS = re.compile(r"(\d+)d")


class CronError(ValueError):
    """Raised for expressions outside the supported cron subset."""


def parse_duration(value: str) -> timedelta:
    """Parse ``30s``, ``1h30m``, ``250ms`` or a whole-day count such as ``7d``."""
    text = value.strip()
    if not text:
        raise CronError("invalid duration: empty")
    days = _DAYS.fullmatch(text)
    if days:
        total = timedelta(days=int(days.group(1)))
    else:
        position = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            position = match.end()
        if position == 0 or position != len(text):
            raise CronError(f"invalid duration: {value}")
        total = timedelta(seconds=seconds)
    if total <= timedelta(0):
        raise CronError(f"duration must be positive: {value}")
    return total


def _next_hour(base: datetime) -> datetime:
    if base.tzinfo is None:
        return (base + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
    # aware times step along UTC; local wall clocks repeat an hour at DST fall-back
    moment = base.astimezone(timezone.utc) + timedelta(hours=1)
    return moment.replace(minute=0, second=0, microsecond=0).astimezone(base.tzinfo)


def _midnight(base: datetime, days_ahead: int) -> datetime:
    day = base.date() + timedelta(days=days_ahead)
    return base.replace(year=day.year, month=day.month, day=day.day, hour=0, minute=0, second=0, microsecond=0)


def _next_week(base: datetime) -> datetime:
    # weekday(): Monday == 0, Sunday == 6
    days_until_sunday = 6 - base.weekday()
    if days_until_sunday == 0:
        days_until_sunday = 7
    return _midnight(base, days_until_sunday)


def _next_month(base: datetime) -> datetime:
    year, month = (base.year + 1, 1) if base.month == 12 else (base.year, base.month + 1)
    return base.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def _next_year(base: datetime) -> datetime:
    return base.replace(year=base.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)


_NAMED = {
    "@yearly": _next_year,
    "@annually": _next_year,
    "@monthly": _next_month,
    "@weekly": _next_week,
    "@daily": lambda base: _midnight(base, 1),
    "@hourly": _next_hour,
}


def _reject_unsupported(expr: str) -> CronError:
    if croniter.is_valid(expr):
        return CronError(
            "standard cron expressions are not yet supported, "
            "use @every <duration> or @hourly/@daily/@weekly/@monthly/@yearly"
        )
    return CronError(f"invalid cron expression: {expr!r}")


def parse_cron(expression: str, base: datetime) -> datetime:
    """Return the next run time after ``base`` for ``expression``."""
    expr = (expression or "").strip()
    if not expr:
        raise CronError("empty cron expression")
    if expr in _NAMED:
        return _NAMED[expr](base)
    if expr.startswith(EVERY_PREFIX):
        return base + parse_duration(expr[len(EVERY_PREFIX):])
    raise _reject_unsupported(expr)


def validate_cron(expression: str) -> None:
    """Raise ``CronError`` unless ``expression`` belongs to the supported subset."""
    expr = (expression or "").strip()
    if not expr:
        raise CronError("empty cron expression")
    if expr in _NAMED:
        return
    if expr.startswith(EVERY_PREFIX):
        parse_duration(expr[len(EVERY_PREFIX):])
        return
    raise _reject_unsupported(expr)
