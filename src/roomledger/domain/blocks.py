"""Owner blocks - maintenance windows and manual holds on a room.

Blocks have no database exclusion constraint of their own (they live in a
separate table), so creation relies on the same room row lock every stay
write takes before its availability check.
"""

from __future__ import annotations

from datetime import date

from roomledger.domain.availability import assert_available
from roomledger.domain.dates import parse_iso_date, validate_stay_dates
from roomledger.domain.errors import NotFoundError
from roomledger.infra.db import txn
from roomledger.infra.repositories import blocks_repository as blocks_repo
from roomledger.infra.repositories.rooms_repository import get_room
from roomledger.observability.logging import get_logger

logger = get_logger(__name__)


def create_block(
    *,
    property_id: str,
    room_id: str,
    date_from: date | str,
    date_to: date | str,
    reason: str | None = None,
    actor_id: str | None = None,
) -> dict:
    """Block [date_from, date_to) on a room.

    Raises:
        CheckoutBeforeCheckinError: date_to is not after date_from.
        NotFoundError: Room not in this property.
        OverbookingError: An occupying stay or another block overlaps.
    """
    date_from = parse_iso_date(date_from, field="date_from")
    date_to = parse_iso_date(date_to, field="date_to")
    validate_stay_dates(date_from, date_to)

    with txn() as cur:
        room = get_room(cur, property_id=property_id, room_id=room_id, for_update=True)
        if room is None:
            raise NotFoundError("room", room_id)
        assert_available(
            cur,
            room_id=room_id,
            check_in=date_from,
            check_out=date_to,
            property_id=property_id,
        )
        block = blocks_repo.insert_block(
            cur,
            property_id=property_id,
            room_id=room_id,
            date_from=date_from,
            date_to=date_to,
            reason=reason,
            created_by=actor_id,
        )

    logger.info(
        "room block created",
        extra={
            "extra_fields": {
                "property_id": property_id,
                "room_id": room_id,
                "block_id": block["id"],
                "date_from": date_from.isoformat(),
                "date_to": date_to.isoformat(),
            }
        },
    )
    return block


def remove_block(*, property_id: str, block_id: str) -> dict:
    with txn() as cur:
        block = blocks_repo.delete_block(cur, property_id=property_id, block_id=block_id)
    if block is None:
        raise NotFoundError("room_block", block_id)
    logger.info(
        "room block removed",
        extra={"extra_fields": {"property_id": property_id, "block_id": block_id}},
    )
    return block
