"""Recurrence calculator — when is a scheduled export next due.

All arithmetic is wall-clock arithmetic on the datetime's own fields. A
zone-aware ``from_time`` keeps its tzinfo, so ``daily`` lands on the same wall
time the next day even when a DST shift happens in between. Nothing in this
module reads the clock or touches storage.
"""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

CUSTOM_FALLBACK_INTERVAL = timedelta(hours=24)

# Bound for next_run_after() when a schedule has been dormant for a long time
_MAX_CATCH_UP_STEPS = 10_000

CustomEvaluator = Callable[[str, datetime], Optional[datetime]]


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the last valid day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


_STEPS: dict[str, Callable[[datetime], datetime]] = {
    "daily": lambda t: t + timedelta(days=1),
    "weekly": lambda t: t + timedelta(days=7),
    "monthly": lambda t: add_months(t, 1),
    "quarterly": lambda t: add_months(t, 3),
    "yearly": lambda t: add_months(t, 12),
}

_MACROS = {
    "@hourly": lambda t: t + timedelta(hours=1),
    "@daily": _STEPS["daily"],
    "@midnight": _STEPS["daily"],
    "@weekly": _STEPS["weekly"],
    "@monthly": _STEPS["monthly"],
    "@quarterly": _STEPS["quarterly"],
    "@yearly": _STEPS["yearly"],
    "@annually": _STEPS["yearly"],
}


def _macro_evaluator(expr: str, from_time: datetime) -> Optional[datetime]:
    step = _MACROS.get(expr.strip().lower())
    return step(from_time) if step else None


_custom_evaluators: list[CustomEvaluator] = [_macro_evaluator]


def register_custom_evaluator(evaluator: CustomEvaluator) -> None:
    """Register an evaluator for custom recurrence text.

    Evaluators are tried most-recently-registered first. An evaluator returns
    ``None`` for expressions it does not understand.
    """
    _custom_evaluators.insert(0, evaluator)


def unregister_custom_evaluator(evaluator: CustomEvaluator) -> None:
    if evaluator in _custom_evaluators and evaluator is not _macro_evaluator:
        _custom_evaluators.remove(evaluator)


def _evaluate_custom(expr: Optional[str], from_time: datetime) -> datetime:
    if expr and expr.strip():
        for evaluator in _custom_evaluators:
            candidate = evaluator(expr, from_time)
            if candidate is not None and candidate > from_time:
                return candidate
    return from_time + CUSTOM_FALLBACK_INTERVAL


def next_run(frequency: str, custom_expr: Optional[str], from_time: datetime) -> datetime:
    """Return the next due instant strictly after ``from_time``.

    Unsupported or unknown custom expressions fall back to a fixed 24 hour
    interval, since a schedule must always have a next run.
    """
    if frequency == "custom":
        return _evaluate_custom(custom_expr, from_time)
    step = _STEPS.get(frequency)
    if step is None:
        raise ValueError(f"Unknown frequency: {frequency}")
    return step(from_time)


def next_run_after(
    frequency: str,
    custom_expr: Optional[str],
    anchor: datetime,
    now: datetime,
) -> datetime:
    """Step forward from ``anchor`` until the result is strictly after ``now``.

    Missed instants are skipped, not replayed. Stepping from the original due
    instant keeps the cadence on its wall-clock grid instead of drifting with
    run duration.
    """
    candidate = next_run(frequency, custom_expr, anchor)
    steps = 1
    while candidate <= now:
        if steps >= _MAX_CATCH_UP_STEPS:
            return next_run(frequency, custom_expr, now)
        candidate = next_run(frequency, custom_expr, candidate)
        steps += 1
    return candidate


def to_zone(stored: datetime, tz_name: str) -> datetime:
    """Convert a naive-UTC storage value into an aware datetime in ``tz_name``."""
    if stored.tzinfo is None:
        stored = stored.replace(tzinfo=timezone.utc)
    return stored.astimezone(ZoneInfo(tz_name))


def to_storage(value: datetime) -> datetime:
    """Convert an aware datetime back to the naive-UTC storage representation."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def compute_next_run_at(
    frequency: str,
    custom_expr: Optional[str],
    from_time: datetime,
    tz_name: str = "UTC",
) -> datetime:
    """Storage-level wrapper: naive UTC in, naive UTC out, wall-clock math in ``tz_name``."""
    local = to_zone(from_time, tz_name)
    return to_storage(next_run(frequency, custom_expr, local))


def compute_next_run_after(
    frequency: str,
    custom_expr: Optional[str],
    anchor: datetime,
    now: datetime,
    tz_name: str = "UTC",
    cadence_anchor: Optional[datetime] = None,
) -> datetime:
    """Storage-level catch-up: first due instant strictly after both ``anchor`` and ``now``.

    With a ``cadence_anchor`` (the stored instant a fixed-frequency cadence
    was started from) every candidate is the k-th step from the anchor's
    local wall time. A candidate that falls in a DST gap is shifted for that
    instant only, and later occurrences return to the anchor's wall time.
    Without one, stepping starts from ``anchor`` itself.
    """
    if cadence_anchor is not None and frequency in _PERIODS:
        return _anchored_next_after(frequency, cadence_anchor, max(anchor, now), tz_name)
    local_anchor = to_zone(anchor, tz_name)
    local_now = to_zone(now, tz_name)
    return to_storage(next_run_after(frequency, custom_expr, local_anchor, local_now))


# frequency -> (unit, size) for steps counted from a cadence anchor
_PERIODS = {
    "daily": ("days", 1),
    "weekly": ("days", 7),
    "monthly": ("months", 1),
    "quarterly": ("months", 3),
    "yearly": ("months", 12),
}


def occurrence(frequency: str, wall_anchor: datetime, index: int) -> datetime:
    """The ``index``-th naive wall time of a fixed cadence started at ``wall_anchor``."""
    unit, size = _PERIODS[frequency]
    if unit == "days":
        return wall_anchor + timedelta(days=size * index)
    return add_months(wall_anchor, size * index)


def localize(wall: datetime, tz_name: str) -> datetime:
    """Naive local wall time to naive UTC.

    A wall time inside a DST gap resolves with the offset in force before the
    transition, so 02:30 on a spring-forward night becomes 03:30 daylight time.
    """
    return to_storage(wall.replace(tzinfo=ZoneInfo(tz_name), fold=0))


def _anchored_next_after(
    frequency: str, cadence_anchor: datetime, threshold: datetime, tz_name: str
) -> datetime:
    wall_anchor = to_zone(cadence_anchor, tz_name).replace(tzinfo=None)
    wall_threshold = to_zone(threshold, tz_name).replace(tzinfo=None)
    unit, size = _PERIODS[frequency]
    if unit == "days":
        elapsed = (wall_threshold - wall_anchor).days // size
    else:
        months = (wall_threshold.year - wall_anchor.year) * 12 + wall_threshold.month - wall_anchor.month
        elapsed = months // size
    # Start one step early; offset changes can move a candidate by an hour
    index = max(1, elapsed - 1)
    candidate = localize(occurrence(frequency, wall_anchor, index), tz_name)
    while candidate <= threshold:
        index += 1
        candidate = localize(occurrence(frequency, wall_anchor, index), tz_name)
    return candidate
