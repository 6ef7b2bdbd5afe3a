"""Outbox repository - durable record of lifecycle events.

Rows are written in the same transaction as the stay mutation, so a crash
between commit and in-process publish leaves an observable outbox row rather
than a silently lost event. Nothing relays these rows: the table is an audit
trail. Channels that missed a propagation are repaired by a full sync
(`channels.force_sync`), which rebuilds availability from the stays table.

Uses raw SQL with psycopg2 (no ORM).
"""

import json

from psycopg2.extensions import cursor as PgCursor


def emit_event(
    cur: PgCursor,
    *,
    property_id: str,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    correlation_id: str | None = None,
) -> int:
    """Append an event to the outbox.

    Args:
        cur: Database cursor (within transaction).
        property_id: Property identifier.
        event_type: Event type (e.g., stay.created).
        aggregate_type: Aggregate type (e.g., stay).
        aggregate_id: Aggregate ID (e.g., stay UUID).
        payload: JSON payload (ids, dates and amounts; no guest contact data).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        The generated event ID.
    """
    cur.execute(
        """
        INSERT INTO outbox_events (
            property_id, event_type, aggregate_type,
            aggregate_id, payload, correlation_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            property_id,
            event_type,
            aggregate_type,
            aggregate_id,
            json.dumps(payload) if payload else None,
            correlation_id,
        ),
    )
    return cur.fetchone()[0]
