"""Channels repository - OTA connections, room mappings and sync logs.

Credentials are stored encrypted (see infra.credentials_vault); this module
only moves the ciphertext around. `external_account_id` (the OTA's hotel id)
stays in clear so inbound webhooks can find their channel.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor

_CHANNEL_COLUMNS = """
    id, property_id, kind, is_active, external_account_id,
    credentials_enc, last_sync_at, created_at
"""


def _channel_from_row(row: tuple) -> dict:
    return {
        "id": str(row[0]),
        "property_id": row[1],
        "kind": row[2],
        "is_active": row[3],
        "external_account_id": row[4],
        "credentials_enc": row[5],
        "last_sync_at": row[6],
        "created_at": row[7],
    }


# --- channels -------------------------------------------------------------


def insert_channel(
    cur: PgCursor,
    *,
    property_id: str,
    kind: str,
    external_account_id: str | None,
    credentials_enc: str,
    is_active: bool = True,
) -> dict | None:
    """Insert a channel; returns None if this property already has one of that kind."""
    cur.execute(
        f"""
        INSERT INTO channels (property_id, kind, is_active, external_account_id, credentials_enc)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (property_id, kind) DO NOTHING
        RETURNING {_CHANNEL_COLUMNS}
        """,
        (property_id, kind, is_active, external_account_id, credentials_enc),
    )
    row = cur.fetchone()
    return _channel_from_row(row) if row else None


def get_channel(cur: PgCursor, *, channel_id: str, property_id: str | None = None) -> dict | None:
    if property_id is None:
        cur.execute(f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE id = %s", (channel_id,))
    else:
        cur.execute(
            f"SELECT {_CHANNEL_COLUMNS} FROM channels WHERE id = %s AND property_id = %s",
            (channel_id, property_id),
        )
    row = cur.fetchone()
    return _channel_from_row(row) if row else None


def find_channel_by_account(cur: PgCursor, *, kind: str, external_account_id: str) -> dict | None:
    """Active channel of `kind` registered for an OTA hotel/account id."""
    cur.execute(
        f"""
        SELECT {_CHANNEL_COLUMNS}
        FROM channels
        WHERE kind = %s AND external_account_id = %s AND is_active
        ORDER BY created_at
        LIMIT 1
        """,
        (kind, external_account_id),
    )
    row = cur.fetchone()
    return _channel_from_row(row) if row else None


def list_channels(
    cur: PgCursor,
    *,
    property_id: str | None = None,
    kind: str | None = None,
    active_only: bool = False,
) -> list[dict]:
    conditions: list[str] = []
    params: list = []
    if property_id is not None:
        conditions.append("property_id = %s")
        params.append(property_id)
    if kind is not None:
        conditions.append("kind = %s")
        params.append(kind)
    if active_only:
        conditions.append("is_active")
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    cur.execute(
        f"SELECT {_CHANNEL_COLUMNS} FROM channels {where} ORDER BY created_at, id",
        params,
    )
    return [_channel_from_row(r) for r in cur.fetchall()]


def update_channel(
    cur: PgCursor,
    *,
    channel_id: str,
    is_active: bool,
    external_account_id: str | None,
    credentials_enc: str,
) -> dict:
    cur.execute(
        f"""
        UPDATE channels
        SET is_active = %s, external_account_id = %s, credentials_enc = %s, updated_at = now()
        WHERE id = %s
        RETURNING {_CHANNEL_COLUMNS}
        """,
        (is_active, external_account_id, credentials_enc, channel_id),
    )
    return _channel_from_row(cur.fetchone())


def touch_last_sync(cur: PgCursor, *, channel_id: str) -> None:
    cur.execute("UPDATE channels SET last_sync_at = now() WHERE id = %s", (channel_id,))


# --- mappings -------------------------------------------------------------


def list_mappings(cur: PgCursor, *, channel_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, channel_id, room_id, external_id
        FROM channel_mappings
        WHERE channel_id = %s
        ORDER BY created_at, id
        """,
        (channel_id,),
    )
    return [
        {"id": str(r[0]), "channel_id": str(r[1]), "room_id": str(r[2]), "external_id": r[3]}
        for r in cur.fetchall()
    ]


def replace_mappings(cur: PgCursor, *, channel_id: str, mappings: list[dict]) -> list[dict]:
    """Swap the whole mapping set of a channel for `mappings`."""
    cur.execute("DELETE FROM channel_mappings WHERE channel_id = %s", (channel_id,))
    for mapping in mappings:
        cur.execute(
            """
            INSERT INTO channel_mappings (channel_id, room_id, external_id)
            VALUES (%s, %s, %s)
            """,
            (channel_id, mapping["room_id"], mapping["external_id"]),
        )
    return list_mappings(cur, channel_id=channel_id)


def mapped_channels_for_room(cur: PgCursor, *, property_id: str, room_id: str) -> list[dict]:
    """Active channels of the property that list this room, with the external id."""
    cur.execute(
        """
        SELECT c.id, c.kind, m.external_id
        FROM channel_mappings m
        JOIN channels c ON c.id = m.channel_id
        WHERE m.room_id = %s
          AND c.property_id = %s
          AND c.is_active
        ORDER BY c.kind, c.id
        """,
        (room_id, property_id),
    )
    return [
        {"channel_id": str(r[0]), "kind": r[1], "external_id": r[2]}
        for r in cur.fetchall()
    ]


def find_room_by_external_id(cur: PgCursor, *, channel_id: str, external_id: str) -> str | None:
    cur.execute(
        "SELECT room_id FROM channel_mappings WHERE channel_id = %s AND external_id = %s",
        (channel_id, external_id),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


# --- sync logs ------------------------------------------------------------


def insert_sync_log(
    cur: PgCursor,
    *,
    channel_id: str,
    event_type: str,
    status: str,
    payload: dict | None = None,
    error_message: str | None = None,
) -> str:
    cur.execute(
        """
        INSERT INTO sync_logs (channel_id, event_type, status, payload, error_message)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            channel_id,
            event_type,
            status,
            json.dumps(payload, default=str) if payload is not None else None,
            error_message,
        ),
    )
    return str(cur.fetchone()[0])


def settle_sync_log(
    cur: PgCursor,
    *,
    sync_log_id: str,
    status: str,
    error_message: str | None = None,
) -> bool:
    """Move a pending log to success/error.

    Returns:
        False if the log was not pending any more (already settled).
    """
    cur.execute(
        """
        UPDATE sync_logs
        SET status = %s, error_message = %s, updated_at = now()
        WHERE id = %s AND status = 'pending'
        """,
        (status, error_message, sync_log_id),
    )
    return cur.rowcount == 1


def list_sync_logs(
    cur: PgCursor,
    *,
    channel_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    cur.execute(
        """
        SELECT id, channel_id, event_type, status, payload, error_message, created_at, updated_at
        FROM sync_logs
        WHERE channel_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s OFFSET %s
        """,
        (channel_id, limit, offset),
    )
    return [
        {
            "id": str(r[0]),
            "channel_id": str(r[1]),
            "event_type": r[2],
            "status": r[3],
            "payload": r[4],
            "error_message": r[5],
            "created_at": r[6],
            "updated_at": r[7],
        }
        for r in cur.fetchall()
    ]
