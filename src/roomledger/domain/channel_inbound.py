"""Inbound OTA events: Booking.com webhooks and Airbnb iCal polling.

Both feeds go through the regular stay lifecycle (create_stay, modify_stay,
cancel_stay), so availability, pricing, history and outbound fan-out behave
exactly as for a stay entered at the front desk. Every processed event leaves a
sync log; failures also publish SyncError.
"""

from __future__ import annotations

from typing import Any

from roomledger.channels import booking_com, ical
from roomledger.domain.errors import (
    AlreadyExistsError,
    ChannelNotConfiguredError,
    ChannelNotFoundError,
    EngineError,
    NotFoundError,
    WebhookSignatureError,
    failure_message,
)
from roomledger.domain.events import SyncError, get_event_bus
from roomledger.domain.stays import IMMUTABLE_STATUSES, cancel_stay, create_stay, modify_stay
from roomledger.infra.credentials_vault import decrypt_credentials
from roomledger.infra.db import txn
from roomledger.infra.repositories import channels_repository as channels_repo
from roomledger.infra.repositories import stays_repository as stays_repo
from roomledger.observability.correlation import correlation_scope
from roomledger.observability.logging import get_logger

logger = get_logger(__name__)

AIRBNB = "airbnb"
ICAL_SOURCE_PREFIX = "airbnb-"


def _record(channel: dict, event_type: str, status: str, payload: dict, error: str | None = None) -> str:
    with txn() as cur:
        return channels_repo.insert_sync_log(
            cur,
            channel_id=channel["id"],
            event_type=event_type,
            status=status,
            payload=payload,
            error_message=error,
        )


def _signal(channel: dict, event_type: str, error: str, sync_log_id: str | None) -> None:
    get_event_bus().publish(
        SyncError(
            property_id=channel["property_id"],
            channel_id=channel["id"],
            channel_kind=channel["kind"],
            event_type=event_type,
            error=error,
            sync_log_id=sync_log_id,
        )
    )


def _find_ota_stay(property_id: str, source: str, source_reference: str) -> dict | None:
    with txn() as cur:
        return stays_repo.find_by_source_reference(
            cur, property_id=property_id, source=source, source_reference=source_reference
        )


# --- Booking.com webhook --------------------------------------------------


def process_webhook(raw_body: bytes, signature: str | None) -> dict[str, Any]:
    """Verify and apply one Booking.com reservation notification.

    Args:
        raw_body: Request body exactly as received.
        signature: Value of the X-Booking-Signature header.

    Returns:
        {"event": ..., "result": "created" | "updated" | "cancelled" |
        "duplicate" | "ignored", "stay_id": ...}

    Raises:
        ChannelNotFoundError: No active Booking.com channel for the hotel id.
        ChannelNotConfiguredError: The channel has no webhook secret.
        WebhookSignatureError: Signature missing or wrong; nothing was changed.
        EngineError: Validation or lifecycle failure applying the event.

    Any failure after the signature check leaves an error sync log and
    publishes SyncError before it propagates.
    """
    hotel_id = booking_com.peek_hotel_id(raw_body)
    if hotel_id is None:
        raise ChannelNotFoundError(f"{booking_com.KIND}:<missing hotel_id>")
    with txn() as cur:
        channel = channels_repo.find_channel_by_account(
            cur, kind=booking_com.KIND, external_account_id=hotel_id
        )
    if channel is None:
        raise ChannelNotFoundError(f"{booking_com.KIND}:{hotel_id}")

    secret = decrypt_credentials(channel["credentials_enc"]).get("webhook_secret")
    if not secret:
        raise ChannelNotConfiguredError(channel["id"], "webhook_secret")

    try:
        booking_com.verify_signature(raw_body, signature, secret)
    except WebhookSignatureError as e:
        sync_log_id = _record(channel, "webhook", "error", {"hotel_id": hotel_id}, e.message)
        _signal(channel, "webhook", e.message, sync_log_id)
        logger.warning(
            "webhook signature rejected",
            extra={"extra_fields": {"channel_id": channel["id"], "hotel_id": hotel_id}},
        )
        raise

    event_type = "webhook"
    summary: dict[str, Any] = {"hotel_id": hotel_id}
    try:
        message = booking_com.parse_reservation_message(raw_body)
        event_type = f"webhook.{message.event}"
        summary = message.summary()
        outcome = _HANDLERS[message.event](channel, message)
    except Exception as e:
        error = failure_message(e)
        if not isinstance(e, EngineError):
            logger.exception(
                "webhook processing crashed",
                extra={"extra_fields": {"channel_id": channel["id"], "event_type": event_type}},
            )
        sync_log_id = _record(channel, event_type, "error", summary, error)
        _signal(channel, event_type, error, sync_log_id)
        raise

    _record(channel, event_type, "success", {**summary, **outcome})
    with txn() as cur:
        channels_repo.touch_last_sync(cur, channel_id=channel["id"])
    logger.info(
        "webhook processed",
        extra={"extra_fields": {"channel_id": channel["id"], "event": message.event, **outcome}},
    )
    return {"event": message.event, **outcome}


def _resolve_room(channel: dict, external_id: str | None) -> str:
    with txn() as cur:
        room_id = channels_repo.find_room_by_external_id(
            cur, channel_id=channel["id"], external_id=external_id or ""
        )
    if room_id is None:
        raise NotFoundError("channel_mapping", external_id or "")
    return room_id


def _create_from_message(channel: dict, message: booking_com.ReservationMessage) -> dict:
    room_id = _resolve_room(channel, message.room_external_id)
    try:
        stay = create_stay(
            property_id=channel["property_id"],
            room_id=room_id,
            check_in=message.check_in,
            check_out=message.check_out,
            guest=message.guest_details(),
            adults=message.adults,
            children=message.children,
            total_amount=message.total_price,
            status="confirmed",
            source=booking_com.KIND,
            source_reference=message.source_reference,
            notes=message.notes,
        )
    except AlreadyExistsError:
        # lost a race with a redelivery of the same reservation
        existing = _find_ota_stay(channel["property_id"], booking_com.KIND, message.source_reference)
        return {"result": "duplicate", "stay_id": existing["id"] if existing else None}
    return {"result": "created", "stay_id": stay["id"]}


def _on_new_reservation(channel: dict, message: booking_com.ReservationMessage) -> dict:
    existing = _find_ota_stay(channel["property_id"], booking_com.KIND, message.source_reference)
    if existing is not None:
        return {"result": "duplicate", "stay_id": existing["id"]}
    return _create_from_message(channel, message)


def _on_modification(channel: dict, message: booking_com.ReservationMessage) -> dict:
    existing = _find_ota_stay(channel["property_id"], booking_com.KIND, message.source_reference)
    if existing is None:
        return _create_from_message(channel, message)

    changes: dict[str, Any] = {
        "room_id": _resolve_room(channel, message.room_external_id),
        "check_in": message.check_in,
        "check_out": message.check_out,
        "adults": message.adults,
        "children": message.children,
    }
    if message.total_price is not None:
        changes["total_amount"] = message.total_price
    else:
        # OTA price unknown: keep what was agreed rather than re-price
        changes["total_amount"] = existing["total_amount"]
    stay = modify_stay(property_id=channel["property_id"], stay_id=existing["id"], changes=changes)
    return {"result": "updated", "stay_id": stay["id"]}


def _on_cancellation(channel: dict, message: booking_com.ReservationMessage) -> dict:
    existing = _find_ota_stay(channel["property_id"], booking_com.KIND, message.source_reference)
    if existing is None:
        return {"result": "ignored", "stay_id": None}
    if existing["status"] == "cancelled":
        return {"result": "duplicate", "stay_id": existing["id"]}
    cancel_stay(
        property_id=channel["property_id"],
        stay_id=existing["id"],
        reason="Cancelled on Booking.com",
    )
    return {"result": "cancelled", "stay_id": existing["id"]}


_HANDLERS = {
    "new_reservation": _on_new_reservation,
    "modification": _on_modification,
    "cancellation": _on_cancellation,
}


# --- Airbnb iCal polling --------------------------------------------------


def _guest_from_summary(summary: str) -> dict[str, Any]:
    parts = (summary or "").split()
    return {
        "first_name": parts[0] if parts else "Airbnb",
        "last_name": " ".join(parts[1:]) or "Guest",
    }


def _sync_entry(channel: dict, room_id: str, entry: ical.CalendarEntry) -> str:
    """Apply one VEVENT; returns created, updated or unchanged."""
    source_reference = f"{ICAL_SOURCE_PREFIX}{entry.uid}"
    existing = _find_ota_stay(channel["property_id"], AIRBNB, source_reference)

    if existing is not None:
        same_dates = existing["check_in"] == entry.start and existing["check_out"] == entry.end
        if same_dates or existing["status"] in IMMUTABLE_STATUSES:
            return "unchanged"
        modify_stay(
            property_id=channel["property_id"],
            stay_id=existing["id"],
            changes={
                "check_in": entry.start,
                "check_out": entry.end,
                "total_amount": existing["total_amount"],
            },
        )
        return "updated"

    if entry.end <= entry.start:
        return "unchanged"

    try:
        create_stay(
            property_id=channel["property_id"],
            room_id=room_id,
            check_in=entry.start,
            check_out=entry.end,
            guest=_guest_from_summary(entry.summary),
            total_amount=0,
            status="confirmed",
            source=AIRBNB,
            source_reference=source_reference,
            notes=entry.description or "Imported from Airbnb iCal",
        )
    except AlreadyExistsError:
        return "unchanged"
    return "created"


def import_calendar(channel: dict, credentials: dict) -> dict[str, int]:
    """Fetch the channel's feed and reconcile every entry.

    Entries fail independently; a failing one is counted in `errors`.

    Raises:
        ChannelNotConfiguredError: No ical_url, or no room mapping.
        ChannelSyncError: The feed could not be fetched.
    """
    url = credentials.get("ical_url")
    if not url:
        raise ChannelNotConfiguredError(channel["id"], "ical_url")
    with txn() as cur:
        mappings = channels_repo.list_mappings(cur, channel_id=channel["id"])
    if not mappings:
        raise ChannelNotConfiguredError(channel["id"], "room_mapping")
    # an Airbnb calendar describes one listing
    room_id = mappings[0]["room_id"]

    entries = ical.parse_ical(ical.fetch_calendar(url))
    counts = {"total_events": len(entries), "created": 0, "updated": 0, "unchanged": 0, "errors": 0}
    for entry in entries:
        try:
            counts[_sync_entry(channel, room_id, entry)] += 1
        except Exception as e:
            counts["errors"] += 1
            log = logger.warning if isinstance(e, EngineError) else logger.exception
            log(
                "calendar entry not applied",
                extra={
                    "extra_fields": {
                        "channel_id": channel["id"],
                        "uid": entry.uid,
                        "code": getattr(e, "code", type(e).__name__),
                        "error": failure_message(e),
                    }
                },
            )
    return counts


def poll_ical_channel(channel: dict) -> dict[str, int]:
    """Poll one Airbnb channel and write one `ical_poll` sync log.

    Raises:
        ChannelNotConfiguredError, ChannelSyncError: After an error sync log
            and SyncError. Unexpected errors are recorded the same way.
    """
    try:
        counts = import_calendar(channel, decrypt_credentials(channel["credentials_enc"]))
    except Exception as e:
        error = failure_message(e)
        sync_log_id = _record(channel, "ical_poll", "error", {}, error)
        _signal(channel, "ical_poll", error, sync_log_id)
        raise

    _record(channel, "ical_poll", "success", counts)
    with txn() as cur:
        channels_repo.touch_last_sync(cur, channel_id=channel["id"])
    logger.info(
        "ical poll completed",
        extra={"extra_fields": {"channel_id": channel["id"], **counts}},
    )
    return counts


def poll_all_ical_channels() -> dict[str, Any]:
    """Poll every active Airbnb channel; one failing channel never stops the rest."""
    with txn() as cur:
        channels = channels_repo.list_channels(cur, kind=AIRBNB, active_only=True)

    results: dict[str, Any] = {}
    with correlation_scope():
        for channel in channels:
            try:
                results[channel["id"]] = poll_ical_channel(channel)
            except EngineError as e:
                results[channel["id"]] = {"error": e.code}
            except Exception:
                logger.exception(
                    "ical poll crashed",
                    extra={"extra_fields": {"channel_id": channel["id"]}},
                )
                results[channel["id"]] = {"error": "INTERNAL"}
    return {"channels": len(channels), "results": results}
