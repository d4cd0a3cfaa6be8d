"""
Clock abstraction for the circulation engine.

Every "now" used by the lifecycle rules comes from a Clock so that due dates,
overdue status and fines can be tested at exact boundaries. Timestamps are
naive local datetimes, matching what the database stores.
"""

from datetime import datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in the server's local timezone."""

    def now(self) -> datetime:
        return datetime.now()


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward and return the new time."""
        self.current = self.current + delta
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current
