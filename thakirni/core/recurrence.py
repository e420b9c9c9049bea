"""
Thakirni — Recurrence arithmetic.

Pure functions: no DB, no network, no settings.

A recurring reminder keeps its original anchor (reminder_time). Each
occurrence is anchor + k units in the user's wall-clock time, so a monthly
reminder anchored on Jan 31 fires Feb 28 (or 29), then Mar 31.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, tzinfo

from thakirni.data.models import ONE_TIME, RECURRENCE_KINDS

_FIXED_STEPS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}


def reminder_type_for(recurrence: str | None) -> str:
    """Map a parsed recurrence value to a stored reminder_type."""
    if recurrence in RECURRENCE_KINDS:
        return recurrence
    return ONE_TIME


def _add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def occurrence(anchor: datetime, kind: str, k: int, tz: tzinfo | None = None) -> datetime:
    """The k-th occurrence after the anchor (k=0 is the anchor itself)."""
    local = anchor.astimezone(tz) if tz is not None else anchor
    if kind in _FIXED_STEPS:
        # Aware + timedelta keeps the wall-clock time in the same zone
        return local + _FIXED_STEPS[kind] * k
    if kind == "monthly":
        return _add_months(local, k)
    if kind == "yearly":
        return _add_months(local, 12 * k)
    raise ValueError(f"Not a recurring kind: {kind!r}")


def _estimate_steps(anchor: datetime, kind: str, after: datetime) -> int:
    """Lower bound on the number of steps needed to pass `after`."""
    if kind in _FIXED_STEPS:
        return int((after - anchor) / _FIXED_STEPS[kind]) - 1
    months = (after.year - anchor.year) * 12 + (after.month - anchor.month)
    if kind == "yearly":
        return months // 12 - 1
    return months - 1


def next_occurrence(
    anchor: datetime,
    kind: str,
    after: datetime,
    tz: tzinfo | None = None,
) -> datetime | None:
    """Smallest anchor + k units (k >= 1) strictly later than `after`.

    Returns None for one-shot reminders.
    """
    if kind not in RECURRENCE_KINDS:
        return None

    k = max(1, _estimate_steps(anchor, kind, after))
    candidate = occurrence(anchor, kind, k, tz)
    while candidate <= after:
        k += 1
        candidate = occurrence(anchor, kind, k, tz)
    return candidate


def within_end(candidate: datetime, end: datetime | None) -> bool:
    """True if `candidate` may still fire given an optional end date."""
    return end is None or candidate <= end
