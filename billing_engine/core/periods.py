"""Calendar helpers for monthly schedules and past-due counting."""
import calendar
from datetime import datetime, timedelta
from typing import Tuple


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def months_elapsed(start: datetime, end: datetime) -> int:
    """Whole calendar months from ``start`` to ``end`` (0 if ``end`` is earlier)."""
    if end <= start:
        return 0
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    return max(months, 0)


def days_past_due(due_date: datetime, now: datetime) -> int:
    """Whole days elapsed since ``due_date``; 0 when not yet due."""
    if now <= due_date:
        return 0
    return (now - due_date) // timedelta(days=1)


def month_window(moment: datetime) -> Tuple[datetime, datetime]:
    """Calendar month ``[start, end)`` containing ``moment``."""
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, add_months(start, 1)
