"""
Working-day count of a shift, derived from its duration.

Shifts are nominal 24h/48h blocks. Anything under 7 hours does not count;
beyond that each started 24h block counts once a 3 hour grace period is
exceeded: ``ceil((hours - 3) / 24)``.
"""

from datetime import datetime, timedelta

MINIMUM_DURATION = timedelta(hours=7)
GRACE = timedelta(hours=3)
DAY = timedelta(hours=24)


def working_days(start: datetime, end: datetime) -> int:
    duration = end - start
    if duration < MINIMUM_DURATION:
        return 0
    # timedelta // timedelta floors exactly, negate twice for ceil
    return -((GRACE - duration) // DAY)


def duration_hours(start: datetime, end: datetime) -> int:
    return round((end - start) / timedelta(hours=1))


def duration_label(start: datetime, end: datetime) -> str:
    days = working_days(start, end)
    plural = "s" if days > 1 else ""
    return f"{duration_hours(start, end)}h ({days} day{plural} worked)"
