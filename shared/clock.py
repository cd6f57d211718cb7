from datetime import datetime, timedelta, timezone
from typing import Callable

# All stored timestamps are naive UTC.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class FrozenClock:
    """Manually advanced clock for deterministic tests and replays."""

    def __init__(self, now: datetime = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime):
        self.now = now


def parse_datetime(value) -> datetime:
    """Parse an ISO-8601 string (or pass a datetime through) as naive UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
