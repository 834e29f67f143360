# services/clock.py - Source of "now" for date-dependent operations
#
# Status derivation and materialization never read the wall clock directly;
# they take a date from one of these.

from datetime import date, timedelta


class SystemClock:
    def today(self) -> date:
        return date.today()


class FixedClock:
    """Clock pinned to a given day. Used by tests and the --today CLI flag."""

    def __init__(self, today: date):
        self._today = today

    def today(self) -> date:
        return self._today

    def set(self, today: date) -> None:
        self._today = today

    def advance(self, days: int = 1) -> date:
        self._today = self._today + timedelta(days=days)
        return self._today
