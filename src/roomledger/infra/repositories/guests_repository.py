"""Guests repository - identity resolution for new stays.

Resolution order within the property:

  1. Explicit guest_id → must exist.
  2. Look up by phone (the unique key), locking the row FOR UPDATE.
  3. Else look up by email, locking FOR UPDATE.
  4. Not found → INSERT; a concurrent insert of the same phone is absorbed by
     ON CONFLICT on UNIQUE(property_id, phone).

Uses raw SQL with psycopg2 (no ORM).
"""

from psycopg2.extensions import cursor as PgCursor


def get_guest(cur: PgCursor, *, property_id: str, guest_id: str) -> dict | None:
    cur.execute(
        """
        SELECT id, first_name, last_name, phone, email
        FROM guests
        WHERE id = %s AND property_id = %s
        """,
        (guest_id, property_id),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return {
        "id": str(row[0]),
        "first_name": row[1],
        "last_name": row[2],
        "phone": row[3],
        "email": row[4],
    }


def find_or_create_guest(
    cur: PgCursor,
    *,
    property_id: str,
    first_name: str,
    last_name: str = "",
    phone: str | None = None,
    email: str | None = None,
) -> tuple[str, bool]:
    """Resolve a guest by phone, then email, or insert a new one.

    Args:
        cur: Database cursor (must be inside a transaction).
        property_id: Property identifier.
        first_name: Given name.
        last_name: Family name.
        phone: Normalised phone. Optional.
        email: Lowercased e-mail. Optional.

    Returns:
        Tuple of (guest_id, created).
    """
    if phone:
        cur.execute(
            "SELECT id FROM guests WHERE property_id = %s AND phone = %s FOR UPDATE",
            (property_id, phone),
        )
        row = cur.fetchone()
        if row:
            return str(row[0]), False

    if email:
        cur.execute(
            """
            SELECT id FROM guests
            WHERE property_id = %s AND lower(email) = lower(%s)
            ORDER BY created_at
            LIMIT 1
            FOR UPDATE
            """,
            (property_id, email),
        )
        row = cur.fetchone()
        if row:
            return str(row[0]), False

    cur.execute(
        """
        INSERT INTO guests (property_id, first_name, last_name, phone, email)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (property_id, phone) DO UPDATE
            SET updated_at = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (property_id, first_name, last_name or "", phone, email),
    )
    row = cur.fetchone()
    return str(row[0]), bool(row[1])
