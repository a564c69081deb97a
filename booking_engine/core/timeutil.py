"""UTC helpers.

Instants are persisted as naive UTC datetimes; anything timezone-aware is
normalized through ``to_utc_naive`` before it reaches the database.
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_utc(value: datetime) -> str:
    normalized = to_utc_naive(value).replace(microsecond=0)
    return normalized.isoformat() + 'Z'


def first_of_month(value: date) -> date:
    return value.replace(day=1)
