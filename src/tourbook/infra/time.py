"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_until(moment: datetime, now: datetime | None = None) -> float:
    """Hours from now until moment (negative once it has passed)."""
    now = ensure_utc(now or utc_now())
    return (ensure_utc(moment) - now).total_seconds() / 3600
