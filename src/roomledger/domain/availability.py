"""Availability checking for a single room.

A night is blocked when it lies inside the requested [check_in, check_out)
and is covered by an occupying stay or by an owner block on the same room.

Overlap formula:  (existing.check_in < new.check_out) AND (existing.check_out > new.check_in)

Only `cancelled` and `no_show` stays release their nights.

This check is not atomic on its own. Write paths run it inside the same
transaction that inserts the stay, after locking the room row, and the
`stays_no_room_overlap` exclusion constraint catches anything that slips by.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from psycopg2.extensions import cursor as PgCursor

from roomledger.domain.dates import clip_nights
from roomledger.domain.errors import OverbookingError

logger = logging.getLogger(__name__)

NON_OCCUPYING_STATUSES = ("cancelled", "no_show")


@dataclass(frozen=True)
class AvailabilityResult:
    room_id: str
    check_in: date
    check_out: date
    blocked_dates: list[date] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return not self.blocked_dates

    def to_dict(self) -> dict:
        return {
            "room_id": self.room_id,
            "available": self.available,
            "blocked_dates": [d.isoformat() for d in self.blocked_dates],
        }


def check_availability(
    cur: PgCursor,
    *,
    room_id: str,
    check_in: date,
    check_out: date,
    exclude_stay_id: str | None = None,
    exclude_block_id: str | None = None,
    property_id: str | None = None,
    lock: bool = False,
) -> AvailabilityResult:
    """Collect the nights of the range already taken on this room.

    Args:
        cur: Database cursor (should be within a transaction).
        room_id: Room to check.
        check_in: First night (inclusive).
        check_out: Departure day (exclusive).
        exclude_stay_id: Stay to ignore, so a stay being modified does not
            conflict with itself.
        exclude_block_id: Block to ignore (block edits).
        property_id: Only used for log context.
        lock: If True, lock the overlapping stay rows FOR UPDATE.

    Returns:
        AvailabilityResult with the sorted blocked nights.
    """
    stay_conditions = [
        "room_id = %s",
        "status NOT IN %s",
        "check_in < %s",
        "check_out > %s",
    ]
    stay_params: list = [room_id, NON_OCCUPYING_STATUSES, check_out, check_in]
    if exclude_stay_id is not None:
        stay_conditions.append("id <> %s")
        stay_params.append(exclude_stay_id)

    suffix = " FOR UPDATE" if lock else ""
    cur.execute(
        f"""
        SELECT id, check_in, check_out
        FROM stays
        WHERE {" AND ".join(stay_conditions)}
        ORDER BY check_in
        {suffix}
        """,
        stay_params,
    )
    stay_rows = cur.fetchall()

    block_conditions = ["room_id = %s", "date_from < %s", "date_to > %s"]
    block_params: list = [room_id, check_out, check_in]
    if exclude_block_id is not None:
        block_conditions.append("id <> %s")
        block_params.append(exclude_block_id)

    cur.execute(
        f"""
        SELECT id, date_from, date_to
        FROM room_blocks
        WHERE {" AND ".join(block_conditions)}
        ORDER BY date_from
        """,
        block_params,
    )
    block_rows = cur.fetchall()

    blocked: set[date] = set()
    for _, start, end in list(stay_rows) + list(block_rows):
        blocked.update(clip_nights(start, end, check_in, check_out))

    result = AvailabilityResult(
        room_id=room_id,
        check_in=check_in,
        check_out=check_out,
        blocked_dates=sorted(blocked),
    )

    if not result.available:
        logger.warning(
            "room availability conflict",
            extra={
                "extra_fields": {
                    "room_id": room_id,
                    "property_id": property_id,
                    "requested_check_in": check_in.isoformat(),
                    "requested_check_out": check_out.isoformat(),
                    "conflicting_stay_ids": [str(r[0]) for r in stay_rows],
                    "conflicting_block_ids": [str(r[0]) for r in block_rows],
                    "blocked_nights": len(result.blocked_dates),
                },
            },
        )

    return result


def assert_available(
    cur: PgCursor,
    *,
    room_id: str,
    check_in: date,
    check_out: date,
    exclude_stay_id: str | None = None,
    exclude_block_id: str | None = None,
    property_id: str | None = None,
    lock: bool = False,
) -> AvailabilityResult:
    """Raise OverbookingError unless every night of the range is free.

    All arguments are forwarded to check_availability.
    """
    result = check_availability(
        cur,
        room_id=room_id,
        check_in=check_in,
        check_out=check_out,
        exclude_stay_id=exclude_stay_id,
        exclude_block_id=exclude_block_id,
        property_id=property_id,
        lock=lock,
    )
    if not result.available:
        raise OverbookingError(room_id, result.blocked_dates)
    return result


def room_calendar(
    cur: PgCursor,
    *,
    property_id: str,
    date_from: date,
    date_to: date,
) -> dict[str, dict[str, list[dict]]]:
    """Occupying stays and blocks per room over a window, for display.

    Plain reads with no locks; may lag behind in-flight writes.
    """
    cur.execute(
        """
        SELECT s.room_id, s.id, s.booking_number, s.check_in, s.check_out, s.status, s.source
        FROM stays s
        WHERE s.property_id = %s
          AND s.status NOT IN %s
          AND s.check_in < %s
          AND s.check_out > %s
        ORDER BY s.room_id, s.check_in
        """,
        (property_id, NON_OCCUPYING_STATUSES, date_to, date_from),
    )
    stay_rows = cur.fetchall()

    cur.execute(
        """
        SELECT b.room_id, b.id, b.date_from, b.date_to, b.reason
        FROM room_blocks b
        WHERE b.property_id = %s
          AND b.date_from < %s
          AND b.date_to > %s
        ORDER BY b.room_id, b.date_from
        """,
        (property_id, date_to, date_from),
    )
    block_rows = cur.fetchall()

    calendar: dict[str, dict[str, list[dict]]] = {}
    for room_id, stay_id, number, start, end, status, source in stay_rows:
        entry = calendar.setdefault(str(room_id), {"stays": [], "blocks": []})
        entry["stays"].append(
            {
                "id": str(stay_id),
                "booking_number": number,
                "check_in": start.isoformat(),
                "check_out": end.isoformat(),
                "status": status,
                "source": source,
            }
        )
    for room_id, block_id, start, end, reason in block_rows:
        entry = calendar.setdefault(str(room_id), {"stays": [], "blocks": []})
        entry["blocks"].append(
            {
                "id": str(block_id),
                "date_from": start.isoformat(),
                "date_to": end.isoformat(),
                "reason": reason,
            }
        )
    return calendar
