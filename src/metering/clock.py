"""Time helpers. All persisted instants are naive UTC datetimes."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(value: datetime) -> float:
    """Convert a naive UTC datetime to epoch seconds."""
    return value.replace(tzinfo=timezone.utc).timestamp()


def from_epoch(seconds: float) -> datetime:
    """Convert epoch seconds to a naive UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
