from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 datetime string and normalize to UTC-naive datetime.

    - None / "" -> None
    - "YYYY-MM-DDTHH:MM" (naive) is interpreted as UTC
    - "...Z" or "...+/-HH:MM" is converted to UTC and tzinfo is stripped
    """
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None

    # Accept trailing Z
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    # Normalize to UTC-naive
    if dt.tzinfo is None:
        # interpret naive as UTC
        return dt.replace(tzinfo=None)

    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def to_iso_date(d: Optional[date]) -> Optional[str]:
    if d is None:
        return None
    return d.isoformat()


# =============================================================================
# CALENDAR ARITHMETIC
# =============================================================================

def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """Resolve `day` in the given month, clamped to the month's length."""
    return date(year, month, min(day, days_in_month(year, month)))


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def add_months(dt: datetime, months: int, anchor_day: int | None = None) -> datetime:
    """
    Move a datetime by whole calendar months, keeping the time of day.

    anchor_day restores the intended day-of-month after a clamp, so
    Jan 31 -> Feb 28 -> Mar 31 rather than drifting to the 28th.
    """
    year, month = _shift_month(dt.year, dt.month, months)
    target = clamp_day(year, month, anchor_day or dt.day)
    return dt.replace(year=target.year, month=target.month, day=target.day)


def next_billing_date(billing_day: int, after: date) -> date:
    """
    First occurrence of billing_day strictly after `after`.

    billing_day is clamped to the length of the target month
    (billing_day=31 in February resolves to the last day of February).
    """
    if billing_day < 1 or billing_day > 31:
        raise ValueError("billing_day must be between 1 and 31")

    candidate = clamp_day(after.year, after.month, billing_day)
    if candidate > after:
        return candidate
    year, month = _shift_month(after.year, after.month, 1)
    return clamp_day(year, month, billing_day)


def previous_billing_date(billing_day: int, before: date) -> date:
    """Last occurrence of billing_day strictly before `before`."""
    candidate = clamp_day(before.year, before.month, billing_day)
    if candidate < before:
        return candidate
    year, month = _shift_month(before.year, before.month, -1)
    return clamp_day(year, month, billing_day)


def month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    """Half-open [start, end) covering the calendar month containing `moment`."""
    start = datetime(moment.year, moment.month, 1)
    year, month = _shift_month(moment.year, moment.month, 1)
    return start, datetime(year, month, 1)


def previous_month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start, _ = month_bounds(moment)
    year, month = _shift_month(start.year, start.month, -1)
    return datetime(year, month, 1), start
