"""Booking number issuance - `BK-YYYY-NNNN`, one counter per year.

The caller's transaction takes `pg_advisory_xact_lock(100000 + year)` before
reading the current maximum, so concurrent creators for the same year queue
up behind each other until the holder commits or rolls back. Different years
use different keys and never contend. A rollback leaves a gap, which is fine;
a duplicate is not, and `stays.booking_number` is UNIQUE as a backstop.
"""

from __future__ import annotations

import os
import re

from psycopg2.extensions import cursor as PgCursor

from roomledger.infra.db import advisory_xact_lock
from roomledger.infra.time import utc_today

ADVISORY_LOCK_BASE = 100000
COUNTER_WIDTH = 4
_PREFIX_RE = re.compile(r"^[A-Z][A-Z0-9]{0,9}$")


def default_prefix() -> str:
    return os.environ.get("BOOKING_NUMBER_PREFIX", "BK")


def lock_key(year: int) -> int:
    return ADVISORY_LOCK_BASE + year


def format_booking_number(prefix: str, year: int, counter: int) -> str:
    """Zero-pad to four digits; wider counters are kept whole."""
    return f"{prefix}-{year}-{counter:0{COUNTER_WIDTH}d}"


def next_booking_number(
    cur: PgCursor,
    *,
    year: int | None = None,
    prefix: str | None = None,
) -> str:
    """Issue the next booking number for `year`.

    Must run inside the transaction that inserts the stay: the lock is only
    released at commit, which is what makes the next caller see this row.

    Args:
        cur: Database cursor (within transaction).
        year: Counter year, defaults to the current UTC year.
        prefix: Identifier prefix, defaults to BOOKING_NUMBER_PREFIX or "BK".

    Returns:
        The new identifier, e.g. "BK-2026-0042".
    """
    year = year or utc_today().year
    prefix = prefix or default_prefix()
    if not _PREFIX_RE.match(prefix):
        raise ValueError(f"invalid booking number prefix: {prefix!r}")

    advisory_xact_lock(cur, lock_key(year))

    pattern = f"^{prefix}-{year}-([0-9]+)$"
    cur.execute(
        """
        SELECT COALESCE(MAX(CAST(SUBSTRING(booking_number FROM %s) AS INTEGER)), 0)
        FROM stays
        WHERE booking_number ~ %s
        """,
        (pattern, pattern),
    )
    row = cur.fetchone()
    current = row[0] if row else 0
    return format_booking_number(prefix, year, current + 1)
