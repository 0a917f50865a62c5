"""
UTC time helpers.

Every timestamp stored or compared by omnisync is a naive datetime in UTC,
matching how SQLite round-trips DATETIME columns. Day boundaries are UTC
midnights regardless of the host timezone.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 / ISO 8601 string ("Z" suffix allowed) to naive UTC."""
    if not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(s))


def to_iso_z(value: datetime) -> str:
    """Format a naive UTC datetime as an RFC 3339 string with a Z suffix."""
    v = to_naive_utc(value)
    return v.strftime("%Y-%m-%dT%H:%M:%S.") + "%03dZ" % (v.microsecond // 1000)


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def days_ago(days: int, now: Optional[datetime] = None) -> datetime:
    """Midnight UTC ``days`` days before ``now``."""
    return start_of_day((now or utcnow()) - timedelta(days=days))


def days_from_now(days: int, now: Optional[datetime] = None) -> datetime:
    """Last instant of the UTC day ``days`` days after ``now``."""
    end = start_of_day((now or utcnow()) + timedelta(days=days))
    return end + timedelta(days=1) - timedelta(milliseconds=1)


def next_aligned_time(now: datetime, interval_minutes: int) -> datetime:
    """
    Next wall-clock instant that is a whole multiple of ``interval_minutes``.

    With a 10-minute interval, 09:03:12 maps to 09:10:00 and 09:10:00 maps
    to 09:20:00 (strictly after ``now``).
    """
    base = now.replace(second=0, microsecond=0)
    minutes_past = base.minute % interval_minutes
    return base + timedelta(minutes=interval_minutes - minutes_past)


def to_unix_seconds(value: datetime) -> int:
    return int(to_naive_utc(value).replace(tzinfo=timezone.utc).timestamp())
