"""Tests for booking number issuance (mocked cursor)."""

from datetime import date
from unittest.mock import call, patch

import pytest

from roomledger.domain.sequence import (
    ADVISORY_LOCK_BASE,
    format_booking_number,
    lock_key,
    next_booking_number,
)


class TestFormat:
    def test_zero_pads_to_four(self):
        assert format_booking_number("BK", 2025, 42) == "BK-2025-0042"

    def test_wider_counter_is_not_truncated(self):
        assert format_booking_number("BK", 2025, 12345) == "BK-2025-12345"


def test_lock_key_is_per_year():
    assert lock_key(2025) == ADVISORY_LOCK_BASE + 2025
    assert lock_key(2025) != lock_key(2026)


class TestNextBookingNumber:
    def test_first_of_year(self, cur):
        cur.fetchone.return_value = (0,)

        assert next_booking_number(cur, year=2025) == "BK-2025-0001"

    def test_increments_max(self, cur):
        cur.fetchone.return_value = (41,)

        assert next_booking_number(cur, year=2025) == "BK-2025-0042"

    def test_lock_taken_before_max_query(self, cur):
        cur.fetchone.return_value = (0,)

        next_booking_number(cur, year=2025)

        first, second = cur.execute.call_args_list
        assert first == call("SELECT pg_advisory_xact_lock(%s)", (102025,))
        assert "MAX" in second[0][0]
        assert second[0][1] == ("^BK-2025-([0-9]+)$", "^BK-2025-([0-9]+)$")

    def test_defaults_to_current_utc_year(self, cur):
        cur.fetchone.return_value = (0,)

        with patch("roomledger.domain.sequence.utc_today", return_value=date(2031, 1, 1)):
            assert next_booking_number(cur) == "BK-2031-0001"

    def test_prefix_from_env(self, cur, monkeypatch):
        monkeypatch.setenv("BOOKING_NUMBER_PREFIX", "RL")
        cur.fetchone.return_value = (9,)

        assert next_booking_number(cur, year=2025) == "RL-2025-0010"

    def test_rejects_unsafe_prefix(self, cur):
        with pytest.raises(ValueError):
            next_booking_number(cur, year=2025, prefix="BK'; --")
        cur.execute.assert_not_called()
