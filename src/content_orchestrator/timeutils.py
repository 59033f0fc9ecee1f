"""Timestamp helpers.

All timestamps are stored as naive UTC datetimes so that SQLite comparisons
(``scheduled_at <= now``) stay lexical-safe and dialect independent.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime | str) -> datetime:
    """Normalise a datetime or ISO-8601 string to naive UTC.

    Naive inputs are assumed to already be UTC. A trailing ``Z`` is accepted.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def local_midnight_utc() -> datetime:
    """Start of the current local day, expressed as naive UTC."""
    local_now = datetime.now().astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).replace(tzinfo=None)
