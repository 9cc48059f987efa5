"""
Clock -- injectable source of "now" for reconciliation runs.

Responsibility:
    The matching engine is handed "now" explicitly.  Services and the SQL
    repository resolve it from a ``Clock`` so a nightly run, its lifecycle
    evaluation and its audit timestamps all agree on one instant.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place that reads the
    wall clock.

Audit relevance:
    Audit rows are unique per (decision_key, event_time).  Replaying a run
    with the same ``DeterministicClock`` time therefore writes no new rows.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Timezone-aware UTC time for services that must not call datetime.now()."""

    @abstractmethod
    def now_utc(self) -> datetime:
        ...

    def today(self) -> date:
        """Calendar date of ``now_utc()``; what date windows are evaluated against."""
        return self.now_utc().date()


class SystemClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock pinned to one instant until moved explicitly.

    Used by tests and by replays of a historical run.
    """

    def __init__(self, fixed_time: datetime | None = None):
        fixed_time = fixed_time or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        if fixed_time.tzinfo is None:
            fixed_time = fixed_time.replace(tzinfo=timezone.utc)
        self._time = fixed_time.astimezone(timezone.utc)

    def now_utc(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = time.astimezone(timezone.utc)

    def advance(self, seconds: int = 1) -> None:
        self._time += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        """Move to the same time on a later day (the next nightly run)."""
        self._time += timedelta(days=days)
