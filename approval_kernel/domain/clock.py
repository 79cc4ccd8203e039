"""
Clock -- injectable source of "now" for the approval kernel.

Services take a Clock in their constructor and stamp every ``created_at``,
``decided_at``, ``completed_at`` and tombstone with it.  Domain functions
receive the timestamp as an argument and never read the time themselves.

``SystemClock`` is the only place that touches the wall clock.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

# Start of every DeterministicClock unless told otherwise
DEFAULT_EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Timezone-aware UTC time for services."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when a test moves it.

    Repeated ``now()`` calls return the same instant, so two writes inside
    one operation share a timestamp and request durations in statistics
    are exact.
    """

    def __init__(self, start: datetime | None = None):
        self._current = start or DEFAULT_EPOCH

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new instant."""
        self._current = self._current + timedelta(seconds=seconds)
        return self._current

    def tick(self) -> datetime:
        return self.advance(1)
