"""Pricing rules repository.

Uses raw SQL with psycopg2 (no ORM).
"""

from datetime import date

from psycopg2.extensions import cursor as PgCursor

_RULE_COLUMNS = """
    id, property_id, name, kind, price, discount_percent,
    date_from, date_to, min_stay, applies_to_rooms, days_of_week, is_active
"""


def _rule_row_to_dict(row: tuple) -> dict:
    return {
        "id": str(row[0]),
        "property_id": row[1],
        "name": row[2],
        "kind": row[3],
        "price": row[4],
        "discount_percent": row[5],
        "date_from": row[6],
        "date_to": row[7],
        "min_stay": row[8],
        "applies_to_rooms": [str(r) for r in (row[9] or [])],
        "days_of_week": list(row[10] or []),
        "is_active": row[11],
    }


def list_rules(cur: PgCursor, *, property_id: str, active_only: bool = False) -> list[dict]:
    """All rules of a property, ordered by creation."""
    where = "property_id = %s"
    if active_only:
        where += " AND is_active"
    cur.execute(
        f"SELECT {_RULE_COLUMNS} FROM pricing_rules WHERE {where} ORDER BY created_at, id",
        (property_id,),
    )
    return [_rule_row_to_dict(r) for r in cur.fetchall()]


def get_rule(cur: PgCursor, *, property_id: str, rule_id: str) -> dict | None:
    cur.execute(
        f"SELECT {_RULE_COLUMNS} FROM pricing_rules WHERE id = %s AND property_id = %s",
        (rule_id, property_id),
    )
    row = cur.fetchone()
    return _rule_row_to_dict(row) if row else None


def insert_rule(
    cur: PgCursor,
    *,
    property_id: str,
    name: str,
    kind: str,
    price: int | None,
    discount_percent: int | None,
    date_from: date | None,
    date_to: date | None,
    min_stay: int,
    applies_to_rooms: list[str],
    days_of_week: list[int],
    is_active: bool = True,
) -> dict:
    """Insert a rule and return the stored row."""
    cur.execute(
        f"""
        INSERT INTO pricing_rules (
            property_id, name, kind, price, discount_percent,
            date_from, date_to, min_stay, applies_to_rooms, days_of_week, is_active
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::uuid[], %s::smallint[], %s)
        RETURNING {_RULE_COLUMNS}
        """,
        (
            property_id,
            name,
            kind,
            price,
            discount_percent,
            date_from,
            date_to,
            min_stay,
            list(applies_to_rooms),
            list(days_of_week),
            is_active,
        ),
    )
    return _rule_row_to_dict(cur.fetchone())


def update_rule(cur: PgCursor, *, rule: dict) -> dict:
    """Persist every mutable column of an already-validated rule dict."""
    cur.execute(
        f"""
        UPDATE pricing_rules
        SET name = %s, kind = %s, price = %s, discount_percent = %s,
            date_from = %s, date_to = %s, min_stay = %s,
            applies_to_rooms = %s::uuid[], days_of_week = %s::smallint[],
            is_active = %s, updated_at = now()
        WHERE id = %s AND property_id = %s
        RETURNING {_RULE_COLUMNS}
        """,
        (
            rule["name"],
            rule["kind"],
            rule["price"],
            rule["discount_percent"],
            rule["date_from"],
            rule["date_to"],
            rule["min_stay"],
            list(rule["applies_to_rooms"]),
            list(rule["days_of_week"]),
            rule["is_active"],
            rule["id"],
            rule["property_id"],
        ),
    )
    return _rule_row_to_dict(cur.fetchone())
