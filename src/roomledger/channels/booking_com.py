"""Booking.com adapter - webhook verification, payload shape, availability push.

Only the minimal shapes needed to keep inventory consistent: reservation
notifications in, open/close instructions out.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import requests

from roomledger.domain.dates import parse_iso_date
from roomledger.domain.errors import ChannelSyncError, ValidationError, WebhookSignatureError
from roomledger.observability.logging import get_logger

logger = get_logger(__name__)

KIND = "booking_com"
SIGNATURE_HEADER = "X-Booking-Signature"
EVENT_KINDS = frozenset({"new_reservation", "modification", "cancellation"})
HTTP_TIMEOUT = int(os.environ.get("CHANNEL_HTTP_TIMEOUT", "15"))


def compute_signature(payload_bytes: bytes, secret: str) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=payload_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(payload_bytes: bytes, signature: str | None, secret: str) -> None:
    """Check the hex HMAC-SHA256 of the exact raw body.

    A `sha256=` prefix on the header is tolerated.

    Raises:
        WebhookSignatureError: Missing or mismatched signature.
    """
    if not signature:
        raise WebhookSignatureError("missing signature header")
    if signature.startswith("sha256="):
        signature = signature[7:]
    expected = compute_signature(payload_bytes, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookSignatureError("signature mismatch")


@dataclass(frozen=True)
class ReservationMessage:
    """One reservation notification from Booking.com."""

    event: str
    hotel_id: str
    reservation_id: str
    room_external_id: str | None
    check_in: date | None
    check_out: date | None
    guest_name: str
    guest_email: str | None
    guest_phone: str | None
    adults: int
    children: int
    total_price: int | None
    currency: str | None
    notes: str | None

    @property
    def source_reference(self) -> str:
        return self.reservation_id

    def guest_details(self) -> dict[str, Any]:
        first, _, last = (self.guest_name or "Booking.com Guest").strip().partition(" ")
        return {
            "first_name": first or "Booking.com",
            "last_name": last or "Guest",
            "phone": self.guest_phone,
            "email": self.guest_email,
        }

    def summary(self) -> dict[str, Any]:
        """Log/sync-log safe view (no guest contact data)."""
        return {
            "event": self.event,
            "hotel_id": self.hotel_id,
            "reservation_id": self.reservation_id,
            "room_id": self.room_external_id,
            "check_in": self.check_in.isoformat() if self.check_in else None,
            "check_out": self.check_out.isoformat() if self.check_out else None,
        }


def _to_minor_units(value: Any) -> int | None:
    """Booking.com sends decimal major units (e.g. 120.50); half-up to cents."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite() or amount < 0:
        raise ValidationError(
            "total_price must be a non-negative decimal amount", {"total_price": str(value)}
        )
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _to_count(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key)
    if not value:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", {key: str(value)}) from None


def peek_hotel_id(payload_bytes: bytes) -> str | None:
    """Read hotel_id before verification, only to find the channel's secret."""
    try:
        data = json.loads(payload_bytes)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("hotel_id") in (None, ""):
        return None
    return str(data["hotel_id"])


def parse_reservation_message(payload_bytes: bytes) -> ReservationMessage:
    """Parse a verified webhook body.

    Raises:
        ValidationError: Not JSON, unknown event, missing required fields, or
            a count or price that is not a number.
    """
    try:
        data = json.loads(payload_bytes)
    except ValueError:
        raise ValidationError("webhook body is not valid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("webhook body must be a JSON object")

    event = data.get("event")
    if event not in EVENT_KINDS:
        raise ValidationError("unknown webhook event", {"event": event})
    if not data.get("reservation_id"):
        raise ValidationError("reservation_id is required", {"event": event})

    needs_stay_fields = event != "cancellation"
    if needs_stay_fields:
        missing = [k for k in ("room_id", "check_in", "check_out") if not data.get(k)]
        if missing:
            raise ValidationError("missing reservation fields", {"fields": missing})

    return ReservationMessage(
        event=event,
        hotel_id=str(data.get("hotel_id", "")),
        reservation_id=str(data["reservation_id"]),
        room_external_id=str(data["room_id"]) if data.get("room_id") else None,
        check_in=parse_iso_date(data["check_in"], field="check_in") if data.get("check_in") else None,
        check_out=parse_iso_date(data["check_out"], field="check_out") if data.get("check_out") else None,
        guest_name=data.get("guest_name") or "",
        guest_email=data.get("guest_email") or None,
        guest_phone=data.get("guest_phone") or None,
        adults=_to_count(data, "adults", 1),
        children=_to_count(data, "children", 0),
        total_price=_to_minor_units(data.get("total_price")),
        currency=data.get("currency"),
        notes=data.get("notes"),
    )


def push_availability(
    credentials: dict[str, Any],
    *,
    external_id: str,
    action: str,
    date_from: date,
    date_to: date,
    reference: str,
) -> dict[str, Any]:
    """Tell Booking.com to close or open a listing for [date_from, date_to).

    Args:
        credentials: Decrypted channel credentials (api_url, api_key, hotel_id).
        external_id: Booking.com room id.
        action: "close" or "open".
        date_from: First night.
        date_to: Departure day.
        reference: Our idempotency reference for the call.

    Returns:
        Parsed response body (or {} for an empty 2xx).

    Raises:
        ChannelSyncError: Missing endpoint, network error, non-2xx or a body
            that is not JSON.
    """
    api_url = credentials.get("api_url")
    if not api_url:
        raise ChannelSyncError("api_url is not configured", {"channel": KIND})

    body = {
        "hotel_id": credentials.get("hotel_id"),
        "room_id": external_id,
        "action": action,
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "reference": reference,
    }
    headers = {"Content-Type": "application/json"}
    if credentials.get("api_key"):
        headers["Authorization"] = f"Bearer {credentials['api_key']}"

    try:
        response = requests.post(
            f"{api_url.rstrip('/')}/availability",
            json=body,
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
        result = response.json() if response.content else {}
    except (requests.RequestException, ValueError) as e:
        raise ChannelSyncError(
            "booking.com availability push failed",
            {"channel": KIND, "action": action, "error": str(e)},
        ) from e

    logger.info(
        "booking.com availability pushed",
        extra={
            "extra_fields": {
                "external_id": external_id,
                "action": action,
                "date_from": date_from.isoformat(),
                "date_to": date_to.isoformat(),
            }
        },
    )
    return result
