"""Stays repository - persistence for stays, their history and payments.

Status and field changes go through domain.stays; nothing here decides
whether a transition is allowed.

Uses raw SQL with psycopg2 (no ORM).
"""

import json
from datetime import date
from typing import Any

from psycopg2.extensions import cursor as PgCursor

STAY_COLUMNS = """
    id, booking_number, property_id, room_id, guest_id, rule_id,
    check_in, check_out, nights, adults, children, total_amount,
    paid_amount, status, source, source_reference, notes,
    cancelled_at, cancel_reason, created_by, created_at, updated_at
"""

_STAY_KEYS = (
    "id",
    "booking_number",
    "property_id",
    "room_id",
    "guest_id",
    "rule_id",
    "check_in",
    "check_out",
    "nights",
    "adults",
    "children",
    "total_amount",
    "paid_amount",
    "status",
    "source",
    "source_reference",
    "notes",
    "cancelled_at",
    "cancel_reason",
    "created_by",
    "created_at",
    "updated_at",
)

# Columns a modification may rewrite
MUTABLE_FIELDS = (
    "room_id",
    "guest_id",
    "rule_id",
    "check_in",
    "check_out",
    "nights",
    "adults",
    "children",
    "total_amount",
    "notes",
)


def stay_from_row(row: tuple) -> dict:
    stay = dict(zip(_STAY_KEYS, row))
    for key in ("id", "room_id", "guest_id", "rule_id"):
        if stay[key] is not None:
            stay[key] = str(stay[key])
    return stay


def insert_stay(
    cur: PgCursor,
    *,
    booking_number: str,
    property_id: str,
    room_id: str,
    guest_id: str | None,
    rule_id: str | None,
    check_in: date,
    check_out: date,
    adults: int,
    children: int,
    total_amount: int,
    status: str,
    source: str,
    source_reference: str | None,
    notes: str | None,
    created_by: str | None,
) -> dict:
    """Insert a stay row; `nights` is derived from the dates.

    Raises:
        psycopg2.errors.ExclusionViolation: Overlaps an occupying stay.
        psycopg2.errors.UniqueViolation: Duplicate booking number or OTA reference.
    """
    cur.execute(
        f"""
        INSERT INTO stays (
            booking_number, property_id, room_id, guest_id, rule_id,
            check_in, check_out, nights, adults, children,
            total_amount, status, source, source_reference, notes, created_by
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {STAY_COLUMNS}
        """,
        (
            booking_number,
            property_id,
            room_id,
            guest_id,
            rule_id,
            check_in,
            check_out,
            (check_out - check_in).days,
            adults,
            children,
            total_amount,
            status,
            source,
            source_reference,
            notes,
            created_by,
        ),
    )
    return stay_from_row(cur.fetchone())


def get_stay(
    cur: PgCursor,
    *,
    property_id: str,
    stay_id: str,
    for_update: bool = False,
) -> dict | None:
    suffix = " FOR UPDATE" if for_update else ""
    cur.execute(
        f"""
        SELECT {STAY_COLUMNS}
        FROM stays
        WHERE id = %s AND property_id = %s
        {suffix}
        """,
        (stay_id, property_id),
    )
    row = cur.fetchone()
    return stay_from_row(row) if row else None


def find_by_source_reference(
    cur: PgCursor,
    *,
    property_id: str,
    source: str,
    source_reference: str,
    for_update: bool = False,
) -> dict | None:
    """Stay imported from an OTA, looked up by the OTA's own reference."""
    suffix = " FOR UPDATE" if for_update else ""
    cur.execute(
        f"""
        SELECT {STAY_COLUMNS}
        FROM stays
        WHERE property_id = %s AND source = %s AND source_reference = %s
        {suffix}
        """,
        (property_id, source, source_reference),
    )
    row = cur.fetchone()
    return stay_from_row(row) if row else None


def update_stay_fields(
    cur: PgCursor, *, stay_id: str, changes: dict[str, Any]
) -> dict:
    """Rewrite the given mutable columns and return the updated row."""
    unknown = set(changes) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")
    assignments = ", ".join(f"{col} = %s" for col in changes)
    cur.execute(
        f"""
        UPDATE stays
        SET {assignments}, updated_at = now()
        WHERE id = %s
        RETURNING {STAY_COLUMNS}
        """,
        (*changes.values(), stay_id),
    )
    return stay_from_row(cur.fetchone())


def update_status(
    cur: PgCursor,
    *,
    stay_id: str,
    status: str,
    cancel_reason: str | None = None,
) -> dict:
    """Move a stay to `status`; cancelling also stamps time and reason."""
    if status == "cancelled":
        cur.execute(
            f"""
            UPDATE stays
            SET status = %s, cancelled_at = now(), cancel_reason = %s, updated_at = now()
            WHERE id = %s
            RETURNING {STAY_COLUMNS}
            """,
            (status, cancel_reason, stay_id),
        )
    else:
        cur.execute(
            f"""
            UPDATE stays
            SET status = %s, updated_at = now()
            WHERE id = %s
            RETURNING {STAY_COLUMNS}
            """,
            (status, stay_id),
        )
    return stay_from_row(cur.fetchone())


def insert_history(
    cur: PgCursor,
    *,
    stay_id: str,
    actor_id: str | None,
    action: str,
    old_value: dict | None = None,
    new_value: dict | None = None,
) -> str:
    """Append one audit row for a stay mutation."""
    cur.execute(
        """
        INSERT INTO stay_history (stay_id, actor_id, action, old_value, new_value)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            stay_id,
            actor_id,
            action,
            json.dumps(old_value, default=str) if old_value is not None else None,
            json.dumps(new_value, default=str) if new_value is not None else None,
        ),
    )
    return str(cur.fetchone()[0])


def list_history(cur: PgCursor, *, stay_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, actor_id, action, old_value, new_value, created_at
        FROM stay_history
        WHERE stay_id = %s
        ORDER BY created_at, id
        """,
        (stay_id,),
    )
    return [
        {
            "id": str(r[0]),
            "actor_id": r[1],
            "action": r[2],
            "old_value": r[3],
            "new_value": r[4],
            "created_at": r[5],
        }
        for r in cur.fetchall()
    ]


def list_payments(cur: PgCursor, *, stay_id: str) -> list[dict]:
    """Payments recorded against the stay by the payments collaborator."""
    cur.execute(
        """
        SELECT id, amount, method, paid_at, reference
        FROM stay_payments
        WHERE stay_id = %s
        ORDER BY paid_at, id
        """,
        (stay_id,),
    )
    return [
        {
            "id": str(r[0]),
            "amount": r[1],
            "method": r[2],
            "paid_at": r[3],
            "reference": r[4],
        }
        for r in cur.fetchall()
    ]
