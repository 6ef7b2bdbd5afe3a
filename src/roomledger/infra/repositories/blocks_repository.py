"""Room blocks repository - owner holds and maintenance windows.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import date

from psycopg2.extensions import cursor as PgCursor


def _block_from_row(row: tuple) -> dict:
    return {
        "id": str(row[0]),
        "property_id": row[1],
        "room_id": str(row[2]),
        "date_from": row[3],
        "date_to": row[4],
        "reason": row[5],
        "created_by": row[6],
    }


def insert_block(
    cur: PgCursor,
    *,
    property_id: str,
    room_id: str,
    date_from: date,
    date_to: date,
    reason: str | None,
    created_by: str | None,
) -> dict:
    cur.execute(
        """
        INSERT INTO room_blocks (property_id, room_id, date_from, date_to, reason, created_by)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id, property_id, room_id, date_from, date_to, reason, created_by
        """,
        (property_id, room_id, date_from, date_to, reason, created_by),
    )
    return _block_from_row(cur.fetchone())


def delete_block(cur: PgCursor, *, property_id: str, block_id: str) -> dict | None:
    """Remove a block; returns the deleted row or None if it did not exist."""
    cur.execute(
        """
        DELETE FROM room_blocks
        WHERE id = %s AND property_id = %s
        RETURNING id, property_id, room_id, date_from, date_to, reason, created_by
        """,
        (block_id, property_id),
    )
    row = cur.fetchone()
    return _block_from_row(row) if row else None
