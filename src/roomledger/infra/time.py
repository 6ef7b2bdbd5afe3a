"""Time helpers."""

from datetime import date, datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Calendar date in UTC, used for booking-number years."""
    return utc_now().date()
