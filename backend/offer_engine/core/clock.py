"""
Injectable time source.

WHAT: Single clock dependency handed to every engine
WHY: Expiry, reopen deadlines and payment due dates must be testable deterministically
HOW: A Clock is any zero-argument callable returning a naive UTC datetime
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def system_clock() -> datetime:
    """Current UTC time (naive, matching stored timestamps)."""
    return datetime.utcnow()


class FrozenClock:
    """Manually driven clock for tests and replays."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 1, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (days=, hours=, ...)."""
        self.now = self.now + timedelta(**kwargs)
        return self.now
