"""
Calendar arithmetic for recurring schedules.

All arithmetic works on whole calendar days (datetime.date); there is no
time or timezone component anywhere in a schedule.
"""

import calendar
from datetime import date, timedelta
from enum import Enum
from typing import Optional

from liquidity.models.recurring import Frequency


class AnchorMode(str, Enum):
    """
    Which day-of-month a month-based step aims for.

    PREVIOUS: the day of the date being advanced. A clamp is carried
        forward, so a series starting on the 31st settles on the 28th/29th
        after February (Jan 31 -> Feb 29 -> Mar 29).
    ORIGINAL: the day of the template's start date, re-applied every step
        (Jan 31 -> Feb 29 -> Mar 31).
    """
    PREVIOUS = "previous"
    ORIGINAL = "original"


MONTHS_PER_STEP = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(d: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Move d forward by whole months.

    The target day is anchor_day (default: d.day), clamped to the length
    of the resulting month.
    """
    day = anchor_day if anchor_day is not None else d.day
    index = d.month - 1 + months
    year = d.year + index // 12
    month = index % 12 + 1
    return date(year, month, min(day, last_day_of_month(year, month)))


def next_occurrence(
    current: date,
    frequency: Frequency,
    anchor_mode: AnchorMode = AnchorMode.PREVIOUS,
    start_date: Optional[date] = None,
) -> date:
    """Advance one step of the given frequency."""
    if frequency == Frequency.WEEKLY:
        return current + timedelta(days=7)

    months = MONTHS_PER_STEP[frequency]
    if anchor_mode == AnchorMode.ORIGINAL and start_date is not None:
        return add_months(current, months, anchor_day=start_date.day)
    return add_months(current, months)


def default_horizon(today: date, horizon_months: int = 12) -> date:
    """The default generation cut-off: today plus horizon_months."""
    return add_months(today, horizon_months)
