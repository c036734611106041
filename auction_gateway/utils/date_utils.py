"""Date manipulation utilities"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def window_start(seconds: int, now: datetime | None = None) -> datetime:
    """Start of a rolling window ending at `now`"""
    return (now or utcnow()) - timedelta(seconds=seconds)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 or epoch-milliseconds timestamp into naive UTC"""
    if value.isdigit():
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).replace(tzinfo=None)

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
