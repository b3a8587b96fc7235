"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

__all__ = [
    "ensure_utc",
    "from_epoch_millis",
    "parse_datetime",
    "serialize_datetime",
    "to_epoch_millis",
    "utcnow",
]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime; naive values are assumed UTC."""
    if value is None:
        return None
    return _as_utc(value)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to a fixed-width UTC ISO 8601 string.

    Stored timestamps are compared lexicographically in SQL, so every value is
    normalised to UTC with microsecond precision.
    """
    if value is None:
        return None
    return _as_utc(value).isoformat(timespec="microseconds")


def parse_datetime(value: str | None, *, assume_utc: bool = True) -> datetime | None:
    """Parse an ISO 8601 string into a ``datetime`` instance."""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None and assume_utc:
        return parsed.replace(tzinfo=UTC)
    return parsed


def from_epoch_millis(value: int | str) -> datetime:
    """Convert milliseconds since the epoch into an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=int(value))


def to_epoch_millis(value: datetime) -> int:
    """Convert ``value`` into integer milliseconds since the epoch."""
    return (_as_utc(value) - _EPOCH) // timedelta(milliseconds=1)
