"""Time sources. Services take a clock so tests can pin "now"."""

from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, now: datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self._now = now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (e.g. minutes=5)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now
