"""Domain error taxonomy.

Every error carries a stable machine code, a human message and a details
dict with the ids and offending values a caller needs to build its own
message. The API layer maps `http_status` straight onto the response.
"""

from __future__ import annotations

from datetime import date
from typing import Any


class EngineError(Exception):
    """Base class for errors raised by the inventory and pricing engine."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# --- validation -----------------------------------------------------------


class ValidationError(EngineError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidDateRangeError(ValidationError):
    code = "INVALID_DATE_RANGE"


class CheckoutBeforeCheckinError(ValidationError):
    code = "CHECKOUT_BEFORE_CHECKIN"

    def __init__(self, check_in: date, check_out: date) -> None:
        self.check_in = check_in
        self.check_out = check_out
        super().__init__(
            "check_out must be after check_in",
            {"check_in": check_in.isoformat(), "check_out": check_out.isoformat()},
        )


# --- not found ------------------------------------------------------------


class NotFoundError(EngineError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found", {"entity": entity, "id": entity_id})


class RateNotFoundError(NotFoundError):
    code = "RATE_NOT_FOUND"

    def __init__(self, rule_id: str) -> None:
        super().__init__("pricing_rule", rule_id)


class ChannelNotFoundError(NotFoundError):
    code = "CHANNEL_NOT_FOUND"

    def __init__(self, lookup: str) -> None:
        super().__init__("channel", lookup)


# --- pricing --------------------------------------------------------------


class RateNotApplicableError(EngineError):
    """No active rule matches one night of the requested stay."""

    code = "RATE_NOT_APPLICABLE"
    http_status = 422

    def __init__(self, night: date, room_id: str) -> None:
        self.night = night
        self.room_id = room_id
        super().__init__(
            f"no pricing rule applies on {night.isoformat()}",
            {"date": night.isoformat(), "room_id": room_id},
        )


# --- conflicts ------------------------------------------------------------


class ConflictError(EngineError):
    code = "CONFLICT"
    http_status = 409


class RateConflictError(ConflictError):
    code = "RATE_CONFLICT"

    def __init__(self, conflicting_rule_id: str, conflicting_rule_name: str) -> None:
        self.conflicting_rule_id = conflicting_rule_id
        super().__init__(
            f"rule overlaps active rule '{conflicting_rule_name}'",
            {"conflicting_rule_id": conflicting_rule_id, "conflicting_rule_name": conflicting_rule_name},
        )


class RoomNotAvailableError(ConflictError):
    """Room exists but is not bookable (maintenance or inactive)."""

    code = "ROOM_NOT_AVAILABLE"

    def __init__(self, room_id: str, room_status: str) -> None:
        self.room_id = room_id
        self.room_status = room_status
        super().__init__(
            f"room is {room_status}",
            {"room_id": room_id, "room_status": room_status},
        )


class OverbookingError(ConflictError):
    code = "OVERBOOKING_DETECTED"

    def __init__(self, room_id: str, blocked_dates: list[date]) -> None:
        self.room_id = room_id
        self.blocked_dates = blocked_dates
        super().__init__(
            "room is not available for the requested dates",
            {"room_id": room_id, "blocked_dates": [d.isoformat() for d in blocked_dates]},
        )


class AlreadyExistsError(ConflictError):
    code = "ALREADY_EXISTS"


# --- state ----------------------------------------------------------------


class InvalidStatusTransitionError(EngineError):
    """Operation not valid from the stay's current status."""

    code = "INVALID_STATUS_TRANSITION"
    http_status = 422

    def __init__(self, stay_id: str, status: str, operation: str) -> None:
        self.stay_id = stay_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"cannot {operation} a stay in status '{status}'",
            {"stay_id": stay_id, "status": status, "operation": operation},
        )


class StayImmutableError(InvalidStatusTransitionError):
    code = "STAY_IMMUTABLE"


# --- channels -------------------------------------------------------------


class WebhookSignatureError(EngineError):
    code = "WEBHOOK_SIGNATURE_INVALID"
    http_status = 401


class ChannelNotConfiguredError(EngineError):
    code = "CHANNEL_NOT_CONFIGURED"
    http_status = 503

    def __init__(self, channel_id: str, missing: str) -> None:
        self.channel_id = channel_id
        self.missing = missing
        super().__init__(
            f"channel is missing credential '{missing}'",
            {"channel_id": channel_id, "missing": missing},
        )


class ChannelSyncError(EngineError):
    """An external channel call failed."""

    code = "CHANNEL_SYNC_FAILED"
    http_status = 502


def failure_message(exc: BaseException) -> str:
    """Sync-log text for any failure; non-domain errors keep their type name."""
    if isinstance(exc, EngineError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
