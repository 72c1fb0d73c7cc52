"""
Clock -- injectable time source.

Responsibility:
    Jobs, steps and the job repository stamp start/end/update times through
    a ``Clock`` handed to them at construction, never through
    ``datetime.now()``.  Tests pin time with ``DeterministicClock``.

Failure modes:
    None.  ``DeterministicClock`` never runs out of time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Wall-clock time in UTC.  The only place the engine reads real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` keeps returning the same instant until ``advance()`` or
    ``set_time()`` moves it.  ``auto_advance`` moves the clock forward by
    the given number of seconds after every read, which makes start and
    end timestamps of fast executions distinguishable.
    """

    def __init__(
        self,
        fixed_time: datetime | None = None,
        auto_advance: int = 0,
    ):
        self._fixed_time = fixed_time or datetime(
            2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._offset = 0
        self._auto_advance = auto_advance

    def now(self) -> datetime:
        current = self._fixed_time + timedelta(seconds=self._offset)
        self._offset += self._auto_advance
        return current

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._offset = 0

    def advance(self, seconds: int = 1) -> None:
        self._offset += seconds
