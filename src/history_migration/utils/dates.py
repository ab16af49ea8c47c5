"""Timestamp helpers.

All timestamps inside the migrator are timezone-aware UTC. The database
stores naive UTC values, so values are normalized on the way in and out.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return value as aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_storage(value: datetime | None) -> datetime | None:
    """Convert to the naive UTC form stored in the database."""
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None
