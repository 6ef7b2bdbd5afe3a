"""Rate resolution - night-by-night pricing from the active rule set.

Priority mode: each night independently picks, among the rules that cover
the room and apply on that date, the one with the lowest priority number.
A night no rule covers fails the whole quote; there is no silent fallback
to the room's base price.

Explicit mode: an operator pins one rule and every night is priced with it,
ignoring date ranges, weekdays and minimum stay.

All amounts are integer minor units.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence

from psycopg2.extensions import cursor as PgCursor

from roomledger.domain.dates import iter_nights, parse_iso_date, validate_stay_dates
from roomledger.domain.errors import (
    NotFoundError,
    RateNotApplicableError,
    RateNotFoundError,
    ValidationError,
)
from roomledger.domain.pricing_rules import (
    PricingContext,
    PricingRule,
    assert_no_conflict,
    rule_from_row,
    validate_rule_fields,
)
from roomledger.infra.repositories import pricing_rules_repository as rules_repo
from roomledger.infra.repositories.rooms_repository import get_room, rooms_exist
from roomledger.observability.logging import get_logger

logger = get_logger(__name__)

MIXED_LABEL_PREFIX = "Mixed"


@dataclass(frozen=True)
class NightPrice:
    date: date
    price: int
    rule_id: str
    rule_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), "price": self.price, "rule_name": self.rule_name}


@dataclass(frozen=True)
class RateQuote:
    room_id: str
    check_in: date
    check_out: date
    nights: int
    total: int
    price_per_night: int
    rate_applied: str
    rule_id: str | None
    breakdown: list[NightPrice] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "check_in": self.check_in.isoformat(),
            "check_out": self.check_out.isoformat(),
            "nights": self.nights,
            "total": self.total,
            "price_per_night": self.price_per_night,
            "rate_applied": self.rate_applied,
            "rule_id": self.rule_id,
            "breakdown": [n.to_dict() for n in self.breakdown],
        }


def select_rule(
    rules: Iterable[PricingRule], night: date, ctx: PricingContext
) -> PricingRule | None:
    """Lowest-priority-number rule matching this night; first one wins ties."""
    best: PricingRule | None = None
    for rule in rules:
        if not rule.is_active or not rule.matches(night, ctx):
            continue
        if best is None or rule.priority < best.priority:
            best = rule
    return best


def rate_label(breakdown: Sequence[NightPrice]) -> str:
    """Single rule name, or `Mixed: A, B` in order of first use."""
    names: list[str] = []
    for night in breakdown:
        if night.rule_name not in names:
            names.append(night.rule_name)
    if len(names) == 1:
        return names[0]
    return f"{MIXED_LABEL_PREFIX}: {', '.join(names)}"


def _average(total: int, nights: int) -> int:
    # round half up
    return (2 * total + nights) // (2 * nights)


def price_stay(
    *,
    room_id: str,
    base_price: int,
    check_in: date,
    check_out: date,
    rules: Sequence[PricingRule],
    explicit_rule: PricingRule | None = None,
) -> RateQuote:
    """Price every night of [check_in, check_out) without touching the database.

    Args:
        room_id: Room being priced (rule scope check).
        base_price: Room base price, the reference for discount rules.
        check_in: First night.
        check_out: Departure day.
        rules: Candidate rules (inactive ones are skipped).
        explicit_rule: If set, price every night with this rule only.

    Returns:
        RateQuote with the ordered per-night breakdown.

    Raises:
        CheckoutBeforeCheckinError: If the range has no nights.
        RateNotApplicableError: If some night has no matching rule.
    """
    nights = validate_stay_dates(check_in, check_out)
    ctx = PricingContext(room_id=room_id, base_price=base_price, total_nights=nights)

    breakdown: list[NightPrice] = []
    for night in iter_nights(check_in, check_out):
        rule = explicit_rule if explicit_rule is not None else select_rule(rules, night, ctx)
        if rule is None:
            raise RateNotApplicableError(night, room_id)
        breakdown.append(
            NightPrice(
                date=night,
                price=rule.night_price(base_price),
                rule_id=rule.id,
                rule_name=rule.name,
            )
        )

    total = sum(n.price for n in breakdown)
    rule_ids = {n.rule_id for n in breakdown}
    return RateQuote(
        room_id=room_id,
        check_in=check_in,
        check_out=check_out,
        nights=nights,
        total=total,
        price_per_night=_average(total, nights),
        rate_applied=rate_label(breakdown),
        rule_id=next(iter(rule_ids)) if len(rule_ids) == 1 else None,
        breakdown=breakdown,
    )


def resolve_rate(
    cur: PgCursor,
    *,
    property_id: str,
    room_id: str,
    check_in: date | str,
    check_out: date | str,
    rule_id: str | None = None,
    room: dict | None = None,
) -> RateQuote:
    """Load the room and rules, then price the stay.

    Args:
        cur: Database cursor.
        property_id: Property identifier.
        room_id: Room UUID.
        check_in: First night (date or ISO string).
        check_out: Departure day (date or ISO string).
        rule_id: Pin this rule instead of priority selection.
        room: Room dict already loaded by the caller (skips the lookup).

    Raises:
        InvalidDateRangeError: Unparseable dates.
        CheckoutBeforeCheckinError: Empty or inverted range.
        NotFoundError: Room not in this property.
        RateNotFoundError: Pinned rule missing or inactive.
        RateNotApplicableError: A night with no matching rule.
    """
    check_in = parse_iso_date(check_in, field="check_in")
    check_out = parse_iso_date(check_out, field="check_out")
    validate_stay_dates(check_in, check_out)

    if room is None:
        room = get_room(cur, property_id=property_id, room_id=room_id)
    if room is None:
        raise NotFoundError("room", room_id)

    if rule_id is not None:
        row = rules_repo.get_rule(cur, property_id=property_id, rule_id=rule_id)
        if row is None or not row["is_active"]:
            raise RateNotFoundError(rule_id)
        quote = price_stay(
            room_id=room_id,
            base_price=room["base_price"],
            check_in=check_in,
            check_out=check_out,
            rules=(),
            explicit_rule=rule_from_row(row),
        )
    else:
        rules = [
            rule_from_row(r)
            for r in rules_repo.list_rules(cur, property_id=property_id, active_only=True)
        ]
        quote = price_stay(
            room_id=room_id,
            base_price=room["base_price"],
            check_in=check_in,
            check_out=check_out,
            rules=rules,
        )

    logger.info(
        "rate resolved",
        extra={
            "extra_fields": {
                "property_id": property_id,
                "room_id": room_id,
                "nights": quote.nights,
                "total": quote.total,
                "rate_applied": quote.rate_applied,
                "explicit_rule": rule_id is not None,
            }
        },
    )
    return quote


# --- rule management ------------------------------------------------------

_RULE_FIELDS = (
    "name",
    "kind",
    "price",
    "discount_percent",
    "date_from",
    "date_to",
    "min_stay",
    "applies_to_rooms",
    "days_of_week",
    "is_active",
)


def _normalise_rule_input(data: dict[str, Any]) -> dict[str, Any]:
    out = dict(data)
    for key in ("date_from", "date_to"):
        if out.get(key) is not None:
            out[key] = parse_iso_date(out[key], field=key)
    out["applies_to_rooms"] = [str(r) for r in (out.get("applies_to_rooms") or [])]
    out["days_of_week"] = [int(d) for d in (out.get("days_of_week") or [])]
    out["min_stay"] = out.get("min_stay") or 1
    out.setdefault("is_active", True)
    return out


def _validate_and_check_conflicts(cur: PgCursor, property_id: str, rule: dict) -> None:
    if not rule.get("name"):
        raise ValidationError("name is required", {"field": "name"})
    validate_rule_fields(
        kind=rule["kind"],
        price=rule.get("price"),
        discount_percent=rule.get("discount_percent"),
        date_from=rule.get("date_from"),
        date_to=rule.get("date_to"),
        days_of_week=rule.get("days_of_week"),
        min_stay=rule.get("min_stay"),
    )
    scoped = rule["applies_to_rooms"]
    if scoped:
        known = rooms_exist(cur, property_id=property_id, room_ids=scoped)
        missing = [r for r in scoped if r not in known]
        if missing:
            raise NotFoundError("room", missing[0])
    if rule["is_active"]:
        candidate = rule_from_row({"id": rule.get("id") or "", **rule})
        existing = [
            rule_from_row(r)
            for r in rules_repo.list_rules(cur, property_id=property_id, active_only=True)
        ]
        assert_no_conflict(candidate, existing)


def create_rule(cur: PgCursor, *, property_id: str, data: dict[str, Any]) -> dict:
    """Validate and store a new pricing rule.

    Raises:
        ValidationError: Missing price/discount, bad range, empty weekday set.
        RateConflictError: Overlaps an active rule of the same dated kind.
    """
    rule = _normalise_rule_input({k: data.get(k) for k in _RULE_FIELDS if k in data})
    if "kind" not in rule or rule["kind"] is None:
        raise ValidationError("kind is required", {"field": "kind"})
    _validate_and_check_conflicts(cur, property_id, rule)
    stored = rules_repo.insert_rule(
        cur,
        property_id=property_id,
        name=rule["name"],
        kind=rule["kind"],
        price=rule.get("price"),
        discount_percent=rule.get("discount_percent"),
        date_from=rule.get("date_from"),
        date_to=rule.get("date_to"),
        min_stay=rule["min_stay"],
        applies_to_rooms=rule["applies_to_rooms"],
        days_of_week=rule["days_of_week"],
        is_active=rule["is_active"],
    )
    logger.info(
        "pricing rule created",
        extra={"extra_fields": {"property_id": property_id, "rule_id": stored["id"], "kind": stored["kind"]}},
    )
    return stored


def update_rule(cur: PgCursor, *, property_id: str, rule_id: str, changes: dict[str, Any]) -> dict:
    """Apply a partial update and re-validate the resulting rule."""
    current = rules_repo.get_rule(cur, property_id=property_id, rule_id=rule_id)
    if current is None:
        raise RateNotFoundError(rule_id)
    merged = dict(current)
    merged.update({k: v for k, v in changes.items() if k in _RULE_FIELDS})
    merged = _normalise_rule_input(merged)
    _validate_and_check_conflicts(cur, property_id, merged)
    return rules_repo.update_rule(cur, rule=merged)


def deactivate_rule(cur: PgCursor, *, property_id: str, rule_id: str) -> dict:
    """Soft delete; history keeps pointing at the rule."""
    return update_rule(cur, property_id=property_id, rule_id=rule_id, changes={"is_active": False})


def get_rule(cur: PgCursor, *, property_id: str, rule_id: str) -> dict:
    row = rules_repo.get_rule(cur, property_id=property_id, rule_id=rule_id)
    if row is None:
        raise RateNotFoundError(rule_id)
    return row


def list_rules(cur: PgCursor, *, property_id: str) -> list[dict]:
    return rules_repo.list_rules(cur, property_id=property_id)

