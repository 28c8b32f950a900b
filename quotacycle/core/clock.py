"""Clock abstraction so date-boundary behaviour is deterministic under test."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Settable clock for tests and replays."""

    def __init__(self, now: datetime):
        self._now = normalize_now(now)

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.date()

    def set(self, now: datetime) -> None:
        self._now = normalize_now(now)

    def advance(self, *, days: int = 0, seconds: int = 0) -> datetime:
        self._now = self._now + timedelta(days=days, seconds=seconds)
        return self._now
