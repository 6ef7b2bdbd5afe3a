"""Pricing rule kinds.

Each kind is its own frozen dataclass carrying only the fields it needs and
answering one question: does this rule apply to night X of a stay on room Y?
The resolver never branches on the kind string.

Priority (lower wins): special=1, seasonal=2, weekend=3, longstay=4, base=5.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, ClassVar, Iterable

from roomledger.domain.dates import in_inclusive_range, overlaps, sunday_based_weekday
from roomledger.domain.errors import RateConflictError, ValidationError


@dataclass(frozen=True)
class PricingContext:
    """Facts about the stay that do not change from night to night."""

    room_id: str
    base_price: int
    total_nights: int


@dataclass(frozen=True, kw_only=True)
class PricingRule:
    id: str
    name: str
    price: int | None = None
    discount_percent: int | None = None
    room_ids: frozenset[str] = frozenset()
    is_active: bool = True

    kind: ClassVar[str] = ""
    priority: ClassVar[int] = 99

    def covers_room(self, room_id: str) -> bool:
        """An empty room scope means every room."""
        return not self.room_ids or room_id in self.room_ids

    def applies_on(self, night: date, ctx: PricingContext) -> bool:
        raise NotImplementedError

    def matches(self, night: date, ctx: PricingContext) -> bool:
        return self.covers_room(ctx.room_id) and self.applies_on(night, ctx)

    def night_price(self, base_price: int) -> int:
        """Price of one night under this rule.

        A discount wins over an absolute price when both are set. Discounts
        round half up on exact integer arithmetic.
        """
        if self.discount_percent is not None:
            return (base_price * (100 - self.discount_percent) + 50) // 100
        if self.price is not None:
            return self.price
        return base_price


@dataclass(frozen=True, kw_only=True)
class BaseRule(PricingRule):
    kind: ClassVar[str] = "base"
    priority: ClassVar[int] = 5

    def applies_on(self, night: date, ctx: PricingContext) -> bool:
        return True


@dataclass(frozen=True, kw_only=True)
class _DatedRule(PricingRule):
    date_from: date
    date_to: date

    def applies_on(self, night: date, ctx: PricingContext) -> bool:
        return in_inclusive_range(night, self.date_from, self.date_to)


@dataclass(frozen=True, kw_only=True)
class SeasonalRule(_DatedRule):
    kind: ClassVar[str] = "seasonal"
    priority: ClassVar[int] = 2


@dataclass(frozen=True, kw_only=True)
class SpecialRule(_DatedRule):
    kind: ClassVar[str] = "special"
    priority: ClassVar[int] = 1


@dataclass(frozen=True, kw_only=True)
class WeekendRule(PricingRule):
    """Applies on a set of weekdays, encoded 0=Sunday ... 6=Saturday."""

    days_of_week: frozenset[int]

    kind: ClassVar[str] = "weekend"
    priority: ClassVar[int] = 3

    def applies_on(self, night: date, ctx: PricingContext) -> bool:
        return sunday_based_weekday(night) in self.days_of_week


@dataclass(frozen=True, kw_only=True)
class LongStayRule(PricingRule):
    """Applies to every night once the whole stay reaches min_stay nights."""

    min_stay: int

    kind: ClassVar[str] = "longstay"
    priority: ClassVar[int] = 4

    def applies_on(self, night: date, ctx: PricingContext) -> bool:
        return ctx.total_nights >= self.min_stay


RULE_TYPES: dict[str, type[PricingRule]] = {
    cls.kind: cls
    for cls in (SpecialRule, SeasonalRule, WeekendRule, LongStayRule, BaseRule)
}

DATED_KINDS = frozenset({"seasonal", "special"})


def rule_from_row(row: dict[str, Any]) -> PricingRule:
    """Build the right rule variant from a pricing_rules row.

    Raises:
        ValidationError: On an unknown kind or a dated rule missing its range.
    """
    kind = row["kind"]
    cls = RULE_TYPES.get(kind)
    if cls is None:
        raise ValidationError(f"unknown rule kind '{kind}'", {"kind": kind})

    common: dict[str, Any] = {
        "id": str(row["id"]),
        "name": row["name"],
        "price": row.get("price"),
        "discount_percent": row.get("discount_percent"),
        "room_ids": frozenset(str(r) for r in (row.get("applies_to_rooms") or ())),
        "is_active": row.get("is_active", True),
    }

    if cls is SeasonalRule or cls is SpecialRule:
        if row.get("date_from") is None or row.get("date_to") is None:
            raise ValidationError(
                f"{kind} rule requires date_from and date_to", {"rule_id": common["id"]}
            )
        return cls(date_from=row["date_from"], date_to=row["date_to"], **common)
    if cls is WeekendRule:
        return cls(days_of_week=frozenset(row.get("days_of_week") or ()), **common)
    if cls is LongStayRule:
        return cls(min_stay=row.get("min_stay") or 1, **common)
    return cls(**common)


def validate_rule_fields(
    *,
    kind: str,
    price: int | None,
    discount_percent: int | None,
    date_from: date | None,
    date_to: date | None,
    days_of_week: Iterable[int] | None,
    min_stay: int | None,
) -> None:
    """Reject rule definitions that could never price a night sensibly."""
    if kind not in RULE_TYPES:
        raise ValidationError(f"unknown rule kind '{kind}'", {"kind": kind})
    if price is None and discount_percent is None:
        raise ValidationError("either price or discount_percent is required", {"kind": kind})
    if price is not None and price < 0:
        raise ValidationError("price must not be negative", {"price": price})
    if discount_percent is not None and not 0 <= discount_percent <= 100:
        raise ValidationError(
            "discount_percent must be between 0 and 100",
            {"discount_percent": discount_percent},
        )
    if kind in DATED_KINDS:
        if date_from is None or date_to is None:
            raise ValidationError(f"{kind} rule requires date_from and date_to", {"kind": kind})
        if date_from >= date_to:
            raise ValidationError(
                "date_from must be before date_to",
                {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
            )
    if kind == "weekend" and not list(days_of_week or ()):
        raise ValidationError("days_of_week is required for weekend rules", {"kind": kind})
    for day in days_of_week or ():
        if not 0 <= day <= 6:
            raise ValidationError("days_of_week values must be 0..6", {"day": day})
    if kind == "longstay" and (min_stay is None or min_stay < 1):
        raise ValidationError("longstay rule requires min_stay >= 1", {"min_stay": min_stay})


def find_conflict(candidate: PricingRule, existing: Iterable[PricingRule]) -> PricingRule | None:
    """First active dated rule of the same kind whose dates and rooms overlap."""
    if candidate.kind not in DATED_KINDS:
        return None
    for other in existing:
        if other.id == candidate.id or other.kind != candidate.kind or not other.is_active:
            continue
        if not overlaps(candidate.date_from, candidate.date_to, other.date_from, other.date_to):
            continue
        shares_rooms = (
            not candidate.room_ids
            or not other.room_ids
            or bool(candidate.room_ids & other.room_ids)
        )
        if shares_rooms:
            return other
    return None


def assert_no_conflict(candidate: PricingRule, existing: Iterable[PricingRule]) -> None:
    conflict = find_conflict(candidate, existing)
    if conflict is not None:
        raise RateConflictError(conflict.id, conflict.name)
