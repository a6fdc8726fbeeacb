"""
UTC time helpers.

Database columns hold naive datetimes that are always UTC; in-memory
comparisons use aware datetimes. These helpers convert between the two.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, for database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value):
    """ISO 8601 string with a UTC offset, or None."""
    if value is None:
        return None
    return as_utc(value).isoformat()
