"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

__all__ = [
    "utc_now",
    "as_utc",
    "ensure_utc",
    "lookback_cutoff",
    "serialize_datetime",
    "parse_datetime",
]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Like :func:`as_utc` but passes ``None`` through."""
    if value is None:
        return None
    return as_utc(value)


def lookback_cutoff(days: int, *, now: datetime | None = None) -> datetime:
    """Return the lower received-time bound for a window of ``days``."""
    reference = as_utc(now) if now is not None else utc_now()
    return reference - timedelta(days=days)


def serialize_datetime(value: datetime | None) -> str | None:
    """Serialise ``value`` to ISO 8601 in UTC."""
    if value is None:
        return None
    return as_utc(value).isoformat()


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string into an aware UTC ``datetime``."""
    if value is None:
        return None
    return as_utc(datetime.fromisoformat(value))
