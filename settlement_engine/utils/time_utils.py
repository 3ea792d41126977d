"""Time utilities"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database columns are compared"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_ago(seconds: float) -> datetime:
    """Cutoff timestamp for age-based sweeps"""
    return utcnow() - timedelta(seconds=seconds)


def as_naive_utc(value: datetime) -> datetime:
    """Drop tzinfo after converting to UTC; naive values are taken as UTC already"""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
