"""
Clock - injectable source of "now".

The engine never calls date.today() directly: the generation horizon and
the "future occurrences" cut-off for series regeneration are both derived
from an injected Clock, so tests can pin time.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Abstract clock interface."""

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time (timezone-aware)."""
        ...

    def today(self) -> date:
        """Get the current calendar date."""
        return self.now().date()


class SystemClock(Clock):
    """
    Production clock that returns actual system time.

    "Today" is the local calendar date, matching what a user sees
    on their due dates.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return date.today()


class FixedClock(Clock):
    """
    Test clock with controlled time.

    now() returns the same value on repeated calls until advance()
    or set_today() is called.
    """

    def __init__(self, fixed: Optional[date | datetime] = None):
        self._now = self._coerce(fixed or date(2024, 1, 1))

    @staticmethod
    def _coerce(value: date | datetime) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return datetime(value.year, value.month, value.day, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set_today(self, value: date | datetime) -> None:
        """Move the clock to a specific day."""
        self._now = self._coerce(value)

    def advance(self, days: int = 1) -> date:
        """Advance the clock by whole days and return the new date."""
        self._now = self._now + timedelta(days=days)
        return self.today()
