"""Rooms repository - read access to bookable rooms.

Rooms are owned by the property setup; the engine only reads them, apart
from taking a row lock that serialises writers on the same room.

Uses raw SQL with psycopg2 (no ORM).
"""

from psycopg2.extensions import cursor as PgCursor

_ROOM_COLUMNS = """
    id, property_id, name, room_type, capacity_adults,
    capacity_children, base_price, status
"""


def _room_from_row(row: tuple) -> dict:
    return {
        "id": str(row[0]),
        "property_id": row[1],
        "name": row[2],
        "room_type": row[3],
        "capacity_adults": row[4],
        "capacity_children": row[5],
        "base_price": row[6],
        "status": row[7],
    }


def get_room(
    cur: PgCursor,
    *,
    property_id: str,
    room_id: str,
    for_update: bool = False,
) -> dict | None:
    """Fetch a room scoped to its property.

    Args:
        cur: Database cursor.
        property_id: Property identifier.
        room_id: Room UUID.
        for_update: Lock the row until the transaction ends. Every stay
            write takes this lock before checking availability.

    Returns:
        Room dict or None if it does not exist in this property.
    """
    suffix = " FOR UPDATE" if for_update else ""
    cur.execute(
        f"""
        SELECT {_ROOM_COLUMNS}
        FROM rooms
        WHERE id = %s AND property_id = %s
        {suffix}
        """,
        (room_id, property_id),
    )
    row = cur.fetchone()
    return _room_from_row(row) if row else None


def rooms_exist(cur: PgCursor, *, property_id: str, room_ids: list[str]) -> set[str]:
    """Return the subset of room_ids that belong to the property."""
    if not room_ids:
        return set()
    cur.execute(
        "SELECT id FROM rooms WHERE property_id = %s AND id = ANY(%s::uuid[])",
        (property_id, list(room_ids)),
    )
    return {str(r[0]) for r in cur.fetchall()}
