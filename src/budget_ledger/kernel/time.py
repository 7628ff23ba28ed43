"""
Clock injection for the ledger

Everything that reads the time (reservation timestamps, the stale window,
code expiry, burn-rate forecasts) asks a TimeProvider, so tests can walk
a fiscal year forward without waiting.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Protocol


class TimeProvider(Protocol):
    def now(self) -> datetime:
        """Current UTC datetime"""
        ...

    def today(self) -> date:
        """Current UTC calendar date"""
        ...


class RealTimeProvider:
    """System clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class TestTimeProvider:
    """
    Clock that only moves when a test moves it

    Reservations made "thirty days ago" are made by advancing the clock
    between two calls rather than by faking timestamps.
    """

    __test__ = False  # not a pytest test class

    def __init__(self, initial_time: datetime) -> None:
        if initial_time.tzinfo is None:
            raise ValueError("initial_time must be timezone-aware")
        self._current_time = initial_time

    def now(self) -> datetime:
        return self._current_time

    def today(self) -> date:
        return self._current_time.date()

    def advance_seconds(self, seconds: int) -> None:
        self._current_time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current_time += timedelta(days=days)
