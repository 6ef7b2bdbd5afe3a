"""Stay lifecycle - create, modify and move stays through their statuses.

    new ──confirm──▶ confirmed ──check_in──▶ checked_in ──check_out──▶ checked_out
     │                   │
     ├── cancel ─────────┴──▶ cancelled
     └── mark_no_show ───────▶ no_show

Every write runs in one transaction:
lock room → check availability → price → number → persist → history → outbox.

The room row lock serialises writers on the same room so the availability
check and the insert see the same world. The stays_no_room_overlap exclusion
constraint is the backstop; hitting it is reported as OVERBOOKING_DETECTED
like any other conflict. Events are published on the bus only after commit.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import psycopg2.errors
from psycopg2.extensions import cursor as PgCursor

from roomledger.domain.availability import assert_available, check_availability
from roomledger.domain.dates import parse_iso_date, validate_stay_dates
from roomledger.domain.errors import (
    AlreadyExistsError,
    InvalidStatusTransitionError,
    NotFoundError,
    OverbookingError,
    RoomNotAvailableError,
    StayImmutableError,
    ValidationError,
)
from roomledger.domain.events import (
    StayCancelled,
    StayCreated,
    StayEvent,
    StayStatusChanged,
    get_event_bus,
)
from roomledger.domain.rates import resolve_rate
from roomledger.domain.sequence import next_booking_number
from roomledger.infra.db import txn
from roomledger.infra.repositories import stays_repository as stays_repo
from roomledger.infra.repositories.guests_repository import find_or_create_guest, get_guest
from roomledger.infra.repositories.outbox_repository import emit_event
from roomledger.infra.repositories.pricing_rules_repository import get_rule
from roomledger.infra.repositories.rooms_repository import get_room
from roomledger.observability.correlation import get_correlation_id
from roomledger.observability.logging import get_logger

logger = get_logger(__name__)

INITIAL_STATUSES = frozenset({"new", "confirmed"})
IMMUTABLE_STATUSES = frozenset({"cancelled", "checked_out", "no_show"})

# operation -> (allowed from, target status)
TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "confirm": (frozenset({"new"}), "confirmed"),
    "check_in": (frozenset({"new", "confirmed"}), "checked_in"),
    "check_out": (frozenset({"checked_in"}), "checked_out"),
    "cancel": (frozenset({"new", "confirmed"}), "cancelled"),
    "mark_no_show": (frozenset({"new", "confirmed"}), "no_show"),
}

_SOURCE_REFERENCE_INDEX = "stays_source_reference_key"


# --- helpers --------------------------------------------------------------


def _lock_bookable_room(cur: PgCursor, property_id: str, room_id: str) -> dict:
    room = get_room(cur, property_id=property_id, room_id=room_id, for_update=True)
    if room is None:
        raise NotFoundError("room", room_id)
    if room["status"] != "active":
        raise RoomNotAvailableError(room_id, room["status"])
    return room


def _check_occupancy(room: dict, adults: int, children: int) -> None:
    if adults < 1 or children < 0:
        raise ValidationError(
            "adults must be at least 1 and children not negative",
            {"adults": adults, "children": children},
        )
    if room.get("capacity_adults") and adults > room["capacity_adults"]:
        raise ValidationError(
            "too many adults for this room",
            {"adults": adults, "capacity_adults": room["capacity_adults"]},
        )
    capacity_children = room.get("capacity_children")
    if capacity_children is not None and children > capacity_children:
        raise ValidationError(
            "too many children for this room",
            {"children": children, "capacity_children": capacity_children},
        )


def _resolve_guest(
    cur: PgCursor,
    property_id: str,
    guest_id: str | None,
    guest: dict | None,
) -> str:
    if guest_id:
        if get_guest(cur, property_id=property_id, guest_id=guest_id) is None:
            raise NotFoundError("guest", guest_id)
        return guest_id
    if guest and (guest.get("first_name") or guest.get("phone") or guest.get("email")):
        resolved_id, _ = find_or_create_guest(
            cur,
            property_id=property_id,
            first_name=guest.get("first_name") or "",
            last_name=guest.get("last_name") or "",
            phone=guest.get("phone") or None,
            email=(guest.get("email") or "").lower() or None,
        )
        return resolved_id
    raise ValidationError("guest_id or guest details are required", {"field": "guest"})


def _is_constraint(exc: psycopg2.Error, name: str) -> bool:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) == name


def _blocked_after_race(room_id: str, check_in: date, check_out: date, exclude_stay_id: str | None) -> list[date]:
    """Recompute blocked nights once the exclusion constraint has fired."""
    with txn() as cur:
        result = check_availability(
            cur,
            room_id=room_id,
            check_in=check_in,
            check_out=check_out,
            exclude_stay_id=exclude_stay_id,
        )
    return result.blocked_dates


def _history_snapshot(stay: dict) -> dict[str, Any]:
    return {
        "booking_number": stay["booking_number"],
        "status": stay["status"],
        "room_id": stay["room_id"],
        "guest_id": stay["guest_id"],
        "check_in": stay["check_in"].isoformat(),
        "check_out": stay["check_out"].isoformat(),
        "nights": stay["nights"],
        "total_amount": stay["total_amount"],
        "source": stay["source"],
    }


def _event_fields(stay: dict, actor_id: str | None) -> dict[str, Any]:
    return {
        "stay_id": stay["id"],
        "property_id": stay["property_id"],
        "room_id": stay["room_id"],
        "guest_id": stay["guest_id"],
        "check_in": stay["check_in"],
        "check_out": stay["check_out"],
        "total": stay["total_amount"],
        "booking_number": stay["booking_number"],
        "actor": actor_id,
        "source": stay["source"],
    }


def _record_event(cur: PgCursor, event: StayEvent, correlation_id: str | None) -> None:
    emit_event(
        cur,
        property_id=event.property_id,
        event_type=event.event_type,
        aggregate_type="stay",
        aggregate_id=event.stay_id,
        payload=event.to_payload(),
        correlation_id=correlation_id or get_correlation_id() or None,
    )


def load_full_stay(cur: PgCursor, stay: dict) -> dict:
    """Attach room, guest, rule, payments and history to a stay row."""
    record = dict(stay)
    record["room"] = get_room(cur, property_id=stay["property_id"], room_id=stay["room_id"])
    record["guest"] = (
        get_guest(cur, property_id=stay["property_id"], guest_id=stay["guest_id"])
        if stay["guest_id"]
        else None
    )
    record["rule"] = (
        get_rule(cur, property_id=stay["property_id"], rule_id=stay["rule_id"])
        if stay["rule_id"]
        else None
    )
    record["payments"] = stays_repo.list_payments(cur, stay_id=stay["id"])
    record["history"] = stays_repo.list_history(cur, stay_id=stay["id"])
    return record


# --- read -----------------------------------------------------------------


def get_stay(*, property_id: str, stay_id: str) -> dict:
    """Full stay record.

    Raises:
        NotFoundError: If the stay is not in this property.
    """
    with txn() as cur:
        stay = stays_repo.get_stay(cur, property_id=property_id, stay_id=stay_id)
        if stay is None:
            raise NotFoundError("stay", stay_id)
        return load_full_stay(cur, stay)


# --- create ---------------------------------------------------------------


def create_stay(
    *,
    property_id: str,
    room_id: str,
    check_in: date | str,
    check_out: date | str,
    guest_id: str | None = None,
    guest: dict | None = None,
    adults: int = 1,
    children: int = 0,
    rule_id: str | None = None,
    total_amount: int | None = None,
    status: str = "new",
    source: str = "direct",
    source_reference: str | None = None,
    notes: str | None = None,
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Create a stay atomically and publish `stay.created`.

    Args:
        property_id: Property identifier.
        room_id: Room UUID.
        check_in: First night.
        check_out: Departure day.
        guest_id: Existing guest. Takes precedence over `guest`.
        guest: Contact details (first_name, last_name, phone, email) used to
            find or create the guest.
        adults: Adult count (>= 1).
        children: Child count.
        rule_id: Pin a pricing rule instead of priority selection. Only a
            pinned rule is stored on the stay; priority winners are not.
        total_amount: Price already agreed elsewhere (OTA imports). Skips
            rate resolution.
        status: "new" (default) or "confirmed" for prepaid OTA bookings.
        source: Sales channel ("direct", "widget", "booking_com", "airbnb").
        source_reference: External reservation id, unique per source.
        notes: Free text.
        actor_id: Who performed the operation (from the auth layer).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        Full stay record.

    Raises:
        CheckoutBeforeCheckinError, ValidationError, NotFoundError,
        RoomNotAvailableError, OverbookingError, RateNotApplicableError,
        RateNotFoundError, AlreadyExistsError (duplicate source_reference).
    """
    check_in = parse_iso_date(check_in, field="check_in")
    check_out = parse_iso_date(check_out, field="check_out")
    validate_stay_dates(check_in, check_out)
    if status not in INITIAL_STATUSES:
        raise ValidationError(f"a stay cannot start in status '{status}'", {"status": status})
    if total_amount is not None and total_amount < 0:
        raise ValidationError("total_amount must not be negative", {"total_amount": total_amount})

    try:
        with txn() as cur:
            room = _lock_bookable_room(cur, property_id, room_id)
            _check_occupancy(room, adults, children)
            assert_available(
                cur,
                room_id=room_id,
                check_in=check_in,
                check_out=check_out,
                property_id=property_id,
            )
            resolved_guest_id = _resolve_guest(cur, property_id, guest_id, guest)

            if total_amount is None:
                quote = resolve_rate(
                    cur,
                    property_id=property_id,
                    room_id=room_id,
                    check_in=check_in,
                    check_out=check_out,
                    rule_id=rule_id,
                    room=room,
                )
                amount = quote.total
            else:
                amount = total_amount

            booking_number = next_booking_number(cur)
            stay = stays_repo.insert_stay(
                cur,
                booking_number=booking_number,
                property_id=property_id,
                room_id=room_id,
                guest_id=resolved_guest_id,
                rule_id=rule_id,
                check_in=check_in,
                check_out=check_out,
                adults=adults,
                children=children,
                total_amount=amount,
                status=status,
                source=source,
                source_reference=source_reference,
                notes=notes,
                created_by=actor_id,
            )
            stays_repo.insert_history(
                cur,
                stay_id=stay["id"],
                actor_id=actor_id,
                action="CREATED",
                new_value=_history_snapshot(stay),
            )
            event = StayCreated(**_event_fields(stay, actor_id))
            _record_event(cur, event, correlation_id)
            record = load_full_stay(cur, stay)
    except psycopg2.errors.ExclusionViolation:
        raise OverbookingError(
            room_id, _blocked_after_race(room_id, check_in, check_out, None)
        ) from None
    except psycopg2.errors.UniqueViolation as exc:
        if _is_constraint(exc, _SOURCE_REFERENCE_INDEX):
            raise AlreadyExistsError(
                "a stay with this external reference already exists",
                {"source": source, "source_reference": source_reference},
            ) from None
        raise

    logger.info(
        "stay created",
        extra={
            "extra_fields": {
                "property_id": property_id,
                "stay_id": stay["id"],
                "booking_number": stay["booking_number"],
                "room_id": room_id,
                "nights": stay["nights"],
                "source": source,
            }
        },
    )
    get_event_bus().publish(event)
    return record


# --- modify ---------------------------------------------------------------


def modify_stay(
    *,
    property_id: str,
    stay_id: str,
    changes: dict[str, Any],
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Change room, dates, occupancy, price or notes of a live stay.

    A room or date change re-checks availability with the stay itself
    excluded and re-prices the stay unless `total_amount` is given. Re-pricing
    keeps the stay's pinned rule unless `changes` sets `rule_id` (None
    returns the stay to priority selection). Each changed field is recorded
    as an old/new pair in one UPDATED history row.

    Args:
        property_id: Property identifier.
        stay_id: Stay UUID.
        changes: Any of room_id, check_in, check_out, adults, children,
            guest_id, rule_id, total_amount, notes.
        actor_id: Who performed the operation.
        correlation_id: Optional correlation ID for tracing.

    Returns:
        Full stay record (unchanged if nothing differed).

    Raises:
        NotFoundError, StayImmutableError, CheckoutBeforeCheckinError,
        RoomNotAvailableError, OverbookingError, RateNotApplicableError.
    """
    allowed = set(stays_repo.MUTABLE_FIELDS) - {"nights"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValidationError("unknown fields", {"fields": sorted(unknown)})

    new_room_id: str | None = None
    new_check_in: date | None = None
    new_check_out: date | None = None
    try:
        with txn() as cur:
            current = stays_repo.get_stay(
                cur, property_id=property_id, stay_id=stay_id, for_update=True
            )
            if current is None:
                raise NotFoundError("stay", stay_id)
            if current["status"] in IMMUTABLE_STATUSES:
                raise StayImmutableError(stay_id, current["status"], "modify")

            new_room_id = str(changes.get("room_id") or current["room_id"])
            new_check_in = parse_iso_date(changes.get("check_in") or current["check_in"], field="check_in")
            new_check_out = parse_iso_date(changes.get("check_out") or current["check_out"], field="check_out")
            validate_stay_dates(new_check_in, new_check_out)

            room_changed = new_room_id != current["room_id"]
            dates_changed = (new_check_in, new_check_out) != (current["check_in"], current["check_out"])

            # Lock both rooms in a stable order so two moves cannot deadlock.
            room = None
            if room_changed or dates_changed:
                for rid in sorted({current["room_id"], new_room_id}):
                    locked = get_room(cur, property_id=property_id, room_id=rid, for_update=True)
                    if rid == new_room_id:
                        room = locked
                if room is None:
                    raise NotFoundError("room", new_room_id)
                if room_changed and room["status"] != "active":
                    raise RoomNotAvailableError(new_room_id, room["status"])
                assert_available(
                    cur,
                    room_id=new_room_id,
                    check_in=new_check_in,
                    check_out=new_check_out,
                    exclude_stay_id=stay_id,
                    property_id=property_id,
                )

            proposed: dict[str, Any] = {
                "room_id": new_room_id,
                "check_in": new_check_in,
                "check_out": new_check_out,
                "nights": (new_check_out - new_check_in).days,
            }
            for key in ("adults", "children", "guest_id", "notes", "rule_id"):
                if key in changes:
                    proposed[key] = changes[key]

            if "adults" in changes or "children" in changes or room_changed:
                room = room or get_room(cur, property_id=property_id, room_id=new_room_id)
                _check_occupancy(
                    room,
                    proposed.get("adults", current["adults"]),
                    proposed.get("children", current["children"]),
                )
            if "guest_id" in changes and changes["guest_id"]:
                if get_guest(cur, property_id=property_id, guest_id=changes["guest_id"]) is None:
                    raise NotFoundError("guest", changes["guest_id"])

            if changes.get("total_amount") is not None:
                proposed["total_amount"] = int(changes["total_amount"])
            elif dates_changed or room_changed or "rule_id" in changes:
                # a pinned rule stays pinned until the caller changes or clears it
                quote = resolve_rate(
                    cur,
                    property_id=property_id,
                    room_id=new_room_id,
                    check_in=new_check_in,
                    check_out=new_check_out,
                    rule_id=changes.get("rule_id", current["rule_id"]),
                    room=room,
                )
                proposed["total_amount"] = quote.total

            diff = {k: v for k, v in proposed.items() if current.get(k) != v}
            if not diff:
                return load_full_stay(cur, current)

            updated = stays_repo.update_stay_fields(cur, stay_id=stay_id, changes=diff)
            stays_repo.insert_history(
                cur,
                stay_id=stay_id,
                actor_id=actor_id,
                action="UPDATED",
                old_value={k: current.get(k) for k in diff},
                new_value=diff,
            )
            emit_event(
                cur,
                property_id=property_id,
                event_type="stay.modified",
                aggregate_type="stay",
                aggregate_id=stay_id,
                payload={"fields": sorted(diff)},
                correlation_id=correlation_id or get_correlation_id() or None,
            )
            record = load_full_stay(cur, updated)
    except psycopg2.errors.ExclusionViolation:
        raise OverbookingError(
            new_room_id,
            _blocked_after_race(new_room_id, new_check_in, new_check_out, stay_id),
        ) from None

    logger.info(
        "stay modified",
        extra={
            "extra_fields": {
                "property_id": property_id,
                "stay_id": stay_id,
                "fields": sorted(diff),
            }
        },
    )
    return record


# --- status transitions ---------------------------------------------------


def _transition(
    *,
    property_id: str,
    stay_id: str,
    operation: str,
    actor_id: str | None,
    reason: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    allowed_from, target = TRANSITIONS[operation]
    with txn() as cur:
        current = stays_repo.get_stay(cur, property_id=property_id, stay_id=stay_id, for_update=True)
        if current is None:
            raise NotFoundError("stay", stay_id)
        if current["status"] not in allowed_from:
            raise InvalidStatusTransitionError(stay_id, current["status"], operation)

        updated = stays_repo.update_status(
            cur,
            stay_id=stay_id,
            status=target,
            cancel_reason=reason if target == "cancelled" else None,
        )
        old_value = {"status": current["status"]}
        new_value: dict[str, Any] = {"status": target}
        if target == "cancelled":
            new_value["cancel_reason"] = reason
        stays_repo.insert_history(
            cur,
            stay_id=stay_id,
            actor_id=actor_id,
            action="CANCELLED" if target == "cancelled" else "STATUS_CHANGED",
            old_value=old_value,
            new_value=new_value,
        )

        if target == "cancelled":
            event: StayEvent = StayCancelled(**_event_fields(updated, actor_id), reason=reason)
        else:
            event = StayStatusChanged(
                **_event_fields(updated, actor_id),
                old_status=current["status"],
                new_status=target,
            )
        _record_event(cur, event, correlation_id)
        record = load_full_stay(cur, updated)

    logger.info(
        "stay status changed",
        extra={
            "extra_fields": {
                "property_id": property_id,
                "stay_id": stay_id,
                "old_status": current["status"],
                "new_status": target,
            }
        },
    )
    get_event_bus().publish(event)
    return record


def confirm_stay(*, property_id: str, stay_id: str, actor_id: str | None = None) -> dict:
    return _transition(property_id=property_id, stay_id=stay_id, operation="confirm", actor_id=actor_id)


def check_in_stay(*, property_id: str, stay_id: str, actor_id: str | None = None) -> dict:
    """new|confirmed → checked_in."""
    return _transition(property_id=property_id, stay_id=stay_id, operation="check_in", actor_id=actor_id)


def check_out_stay(*, property_id: str, stay_id: str, actor_id: str | None = None) -> dict:
    """checked_in → checked_out."""
    return _transition(property_id=property_id, stay_id=stay_id, operation="check_out", actor_id=actor_id)


def mark_no_show(*, property_id: str, stay_id: str, actor_id: str | None = None) -> dict:
    return _transition(property_id=property_id, stay_id=stay_id, operation="mark_no_show", actor_id=actor_id)


def cancel_stay(
    *,
    property_id: str,
    stay_id: str,
    reason: str | None = None,
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """Cancel a new or confirmed stay and release its nights.

    Publishes `stay.cancelled`, which re-opens the room on mapped channels.

    Raises:
        NotFoundError: Stay not in this property.
        InvalidStatusTransitionError: Stay is checked in, checked out, or already terminal.
    """
    return _transition(
        property_id=property_id,
        stay_id=stay_id,
        operation="cancel",
        actor_id=actor_id,
        reason=reason,
        correlation_id=correlation_id,
    )
