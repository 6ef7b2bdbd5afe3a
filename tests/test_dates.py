"""Tests for half-open date range helpers."""

from datetime import date, datetime

import pytest

from roomledger.domain.dates import (
    clip_nights,
    in_inclusive_range,
    iter_nights,
    nights_between,
    overlaps,
    parse_iso_date,
    sunday_based_weekday,
    validate_stay_dates,
)
from roomledger.domain.errors import CheckoutBeforeCheckinError, InvalidDateRangeError


class TestParseIsoDate:
    def test_passes_dates_through(self):
        assert parse_iso_date(date(2025, 3, 1)) == date(2025, 3, 1)

    def test_datetime_becomes_date(self):
        assert parse_iso_date(datetime(2025, 3, 1, 14, 30)) == date(2025, 3, 1)

    def test_parses_iso_string(self):
        assert parse_iso_date("2025-03-01") == date(2025, 3, 1)

    def test_garbage_raises_with_field(self):
        with pytest.raises(InvalidDateRangeError) as exc:
            parse_iso_date("not-a-date", field="check_in")
        assert exc.value.details == {"field": "check_in", "value": "not-a-date"}


class TestValidateStayDates:
    def test_returns_night_count(self):
        assert validate_stay_dates(date(2025, 3, 1), date(2025, 3, 4)) == 3

    def test_same_day_rejected(self):
        with pytest.raises(CheckoutBeforeCheckinError):
            validate_stay_dates(date(2025, 3, 1), date(2025, 3, 1))

    def test_inverted_rejected(self):
        with pytest.raises(CheckoutBeforeCheckinError) as exc:
            validate_stay_dates(date(2025, 3, 5), date(2025, 3, 1))
        assert exc.value.code == "CHECKOUT_BEFORE_CHECKIN"


def test_iter_nights_excludes_checkout_day():
    nights = list(iter_nights(date(2025, 3, 30), date(2025, 4, 2)))
    assert nights == [date(2025, 3, 30), date(2025, 3, 31), date(2025, 4, 1)]
    assert nights_between(date(2025, 3, 30), date(2025, 4, 2)) == 3


class TestOverlaps:
    def test_touching_ranges_do_not_overlap(self):
        # same-day turnover
        assert not overlaps(date(2025, 3, 1), date(2025, 3, 5), date(2025, 3, 5), date(2025, 3, 8))

    def test_one_shared_night_overlaps(self):
        assert overlaps(date(2025, 3, 1), date(2025, 3, 5), date(2025, 3, 4), date(2025, 3, 8))

    def test_containment_overlaps(self):
        assert overlaps(date(2025, 3, 1), date(2025, 3, 10), date(2025, 3, 3), date(2025, 3, 4))


def test_clip_nights_returns_only_shared_nights():
    assert clip_nights(date(2025, 3, 1), date(2025, 3, 5), date(2025, 3, 3), date(2025, 3, 8)) == [
        date(2025, 3, 3),
        date(2025, 3, 4),
    ]
    assert clip_nights(date(2025, 3, 1), date(2025, 3, 3), date(2025, 3, 3), date(2025, 3, 8)) == []


def test_sunday_based_weekday():
    # 2025-03-02 is a Sunday, 2025-03-08 a Saturday
    assert sunday_based_weekday(date(2025, 3, 2)) == 0
    assert sunday_based_weekday(date(2025, 3, 3)) == 1
    assert sunday_based_weekday(date(2025, 3, 8)) == 6


def test_in_inclusive_range_includes_both_bounds():
    assert in_inclusive_range(date(2025, 3, 1), date(2025, 3, 1), date(2025, 3, 3))
    assert in_inclusive_range(date(2025, 3, 3), date(2025, 3, 1), date(2025, 3, 3))
    assert not in_inclusive_range(date(2025, 3, 4), date(2025, 3, 1), date(2025, 3, 3))
    assert in_inclusive_range(date(2030, 1, 1), None, None)
