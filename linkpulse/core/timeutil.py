"""Naive-UTC time helpers; all stored timestamps are naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def hour_bucket(value: datetime) -> datetime:
    """Truncate a timestamp to the top of its UTC hour."""
    return to_naive_utc(value).replace(minute=0, second=0, microsecond=0)
