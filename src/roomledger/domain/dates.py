"""Half-open date range helpers.

A stay or block occupies [check_in, check_out): the check-out day itself is
free, so a departure and an arrival on the same day never collide.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterator

from roomledger.domain.errors import CheckoutBeforeCheckinError, InvalidDateRangeError

ONE_DAY = timedelta(days=1)


def parse_iso_date(value: date | str, *, field: str = "date") -> date:
    """Accept a date or a YYYY-MM-DD string.

    Raises:
        InvalidDateRangeError: If the string is not a calendar date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidDateRangeError(
            f"{field} is not a valid date", {"field": field, "value": str(value)}
        ) from None


def validate_stay_dates(check_in: date, check_out: date) -> int:
    """Return the night count, rejecting empty or inverted ranges."""
    if check_out <= check_in:
        raise CheckoutBeforeCheckinError(check_in, check_out)
    return (check_out - check_in).days


def nights_between(check_in: date, check_out: date) -> int:
    return (check_out - check_in).days


def iter_nights(check_in: date, check_out: date) -> Iterator[date]:
    """Yield every night d with check_in <= d < check_out."""
    current = check_in
    while current < check_out:
        yield current
        current += ONE_DAY


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    """Strict overlap of two half-open intervals."""
    return a_start < b_end and a_end > b_start


def clip_nights(
    range_start: date, range_end: date, query_start: date, query_end: date
) -> list[date]:
    """Nights of [range_start, range_end) that fall inside the query range."""
    start = max(range_start, query_start)
    end = min(range_end, query_end)
    return list(iter_nights(start, end))


def sunday_based_weekday(d: date) -> int:
    """Weekday with 0=Sunday ... 6=Saturday, the encoding weekend rules use."""
    return (d.weekday() + 1) % 7


def in_inclusive_range(d: date, start: date | None, end: date | None) -> bool:
    """True when start <= d <= end; an open bound never excludes."""
    if start is not None and d < start:
        return False
    if end is not None and d > end:
        return False
    return True
