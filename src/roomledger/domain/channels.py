"""Channel management - registering OTA connections and their room mappings."""

from __future__ import annotations

from typing import Any

import psycopg2.errors

from roomledger.domain.channel_sync import SYNC_TASK_PATH
from roomledger.domain.errors import (
    AlreadyExistsError,
    ChannelNotFoundError,
    NotFoundError,
    ValidationError,
)
from roomledger.infra.credentials_vault import decrypt_credentials, encrypt_credentials, mask_credentials
from roomledger.infra.db import txn
from roomledger.infra.repositories import channels_repository as channels_repo
from roomledger.infra.repositories.rooms_repository import rooms_exist
from roomledger.infra.time import utc_now
from roomledger.observability.logging import get_logger
from roomledger.tasks.client import get_tasks_client
from roomledger.tasks.contracts import ChannelSyncJob

logger = get_logger(__name__)

CHANNEL_KINDS = ("booking_com", "airbnb")
# Credential keys that must be present before a channel can be activated
REQUIRED_CREDENTIALS = {
    "booking_com": ("webhook_secret",),
    "airbnb": ("ical_url",),
}


def channel_view(channel: dict) -> dict[str, Any]:
    """Public shape of a channel: credentials masked, ciphertext dropped."""
    view = {k: v for k, v in channel.items() if k != "credentials_enc"}
    view["credentials"] = mask_credentials(decrypt_credentials(channel["credentials_enc"]))
    return view


def _validate_credentials(kind: str, credentials: dict[str, Any]) -> None:
    missing = [k for k in REQUIRED_CREDENTIALS[kind] if not credentials.get(k)]
    if missing:
        raise ValidationError("missing channel credentials", {"kind": kind, "missing": missing})


def _load(cur, property_id: str, channel_id: str) -> dict:
    channel = channels_repo.get_channel(cur, channel_id=channel_id, property_id=property_id)
    if channel is None:
        raise ChannelNotFoundError(channel_id)
    return channel


def create_channel(
    *,
    property_id: str,
    kind: str,
    credentials: dict[str, Any],
    external_account_id: str | None = None,
    is_active: bool = True,
) -> dict:
    """Register an OTA connection for a property.

    Raises:
        ValidationError: Unknown kind or required credentials missing.
        AlreadyExistsError: The property already has a channel of this kind.
    """
    if kind not in CHANNEL_KINDS:
        raise ValidationError("unknown channel kind", {"kind": kind, "allowed": list(CHANNEL_KINDS)})
    _validate_credentials(kind, credentials)
    if kind == "booking_com" and not external_account_id:
        external_account_id = credentials.get("hotel_id")

    with txn() as cur:
        channel = channels_repo.insert_channel(
            cur,
            property_id=property_id,
            kind=kind,
            external_account_id=external_account_id,
            credentials_enc=encrypt_credentials(credentials),
            is_active=is_active,
        )
    if channel is None:
        raise AlreadyExistsError(
            "channel already registered for this property",
            {"property_id": property_id, "kind": kind},
        )

    logger.info(
        "channel created",
        extra={"extra_fields": {"property_id": property_id, "channel_id": channel["id"], "kind": kind}},
    )
    return channel_view(channel)


def update_channel(
    *,
    property_id: str,
    channel_id: str,
    credentials: dict[str, Any] | None = None,
    external_account_id: str | None = None,
    is_active: bool | None = None,
) -> dict:
    """Patch a channel. Credentials are merged key by key into the stored ones."""
    with txn() as cur:
        channel = _load(cur, property_id, channel_id)
        merged = decrypt_credentials(channel["credentials_enc"])
        if credentials:
            merged.update(credentials)
        active = channel["is_active"] if is_active is None else is_active
        if active:
            _validate_credentials(channel["kind"], merged)
        updated = channels_repo.update_channel(
            cur,
            channel_id=channel_id,
            is_active=active,
            external_account_id=external_account_id or channel["external_account_id"],
            credentials_enc=encrypt_credentials(merged),
        )
    logger.info(
        "channel updated",
        extra={
            "extra_fields": {
                "channel_id": channel_id,
                "is_active": active,
                "credential_keys": sorted(credentials or {}),
            }
        },
    )
    return channel_view(updated)


def deactivate_channel(*, property_id: str, channel_id: str) -> dict:
    """Soft delete: sync logs and mappings are kept for audit."""
    return update_channel(property_id=property_id, channel_id=channel_id, is_active=False)


def get_channel(*, property_id: str, channel_id: str) -> dict:
    with txn() as cur:
        channel = _load(cur, property_id, channel_id)
        mappings = channels_repo.list_mappings(cur, channel_id=channel_id)
    return {**channel_view(channel), "mappings": mappings}


def list_channels(*, property_id: str) -> list[dict]:
    with txn() as cur:
        channels = channels_repo.list_channels(cur, property_id=property_id)
    return [channel_view(c) for c in channels]


def replace_mappings(*, property_id: str, channel_id: str, mappings: list[dict]) -> list[dict]:
    """Set the channel's full room mapping list.

    Args:
        mappings: [{"room_id": ..., "external_id": ...}]. Each room and each
            external id may appear once.

    Raises:
        ValidationError: Duplicates or blank external ids.
        NotFoundError: A room is not part of this property.
    """
    room_ids = [str(m.get("room_id") or "") for m in mappings]
    external_ids = [str(m.get("external_id") or "").strip() for m in mappings]
    if any(not e for e in external_ids):
        raise ValidationError("external_id is required for every mapping")
    if len(set(room_ids)) != len(room_ids) or len(set(external_ids)) != len(external_ids):
        raise ValidationError("duplicate room or external id in mappings")

    clean = [{"room_id": r, "external_id": e} for r, e in zip(room_ids, external_ids)]
    try:
        with txn() as cur:
            _load(cur, property_id, channel_id)
            found = rooms_exist(cur, property_id=property_id, room_ids=room_ids)
            for room_id in room_ids:
                if room_id not in found:
                    raise NotFoundError("room", room_id)
            result = channels_repo.replace_mappings(cur, channel_id=channel_id, mappings=clean)
    except psycopg2.errors.UniqueViolation:
        raise AlreadyExistsError("mapping conflicts with an existing mapping") from None

    logger.info(
        "channel mappings replaced",
        extra={"extra_fields": {"channel_id": channel_id, "count": len(result)}},
    )
    return result


def list_sync_logs(*, property_id: str, channel_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    limit = max(1, min(limit, 200))
    with txn() as cur:
        _load(cur, property_id, channel_id)
        return channels_repo.list_sync_logs(cur, channel_id=channel_id, limit=limit, offset=max(0, offset))


def force_sync(*, property_id: str, channel_id: str) -> dict:
    """Enqueue a full_sync job for the channel.

    Raises:
        ChannelNotFoundError: Unknown channel.
        ValidationError: Channel is inactive.
    """
    with txn() as cur:
        channel = _load(cur, property_id, channel_id)
        if not channel["is_active"]:
            raise ValidationError("channel is inactive", {"channel_id": channel_id})
        # one full sync per channel per minute
        task_id = f"channel-full-sync:{channel_id}:{utc_now().strftime('%Y%m%d%H%M')}"
        sync_log_id = channels_repo.insert_sync_log(
            cur,
            channel_id=channel_id,
            event_type="full_sync",
            status="pending",
            payload={"task_id": task_id},
        )

    job = ChannelSyncJob(
        task_id=task_id,
        sync_log_id=sync_log_id,
        channel_id=channel_id,
        property_id=property_id,
        action="full_sync",
    )
    enqueued = get_tasks_client().enqueue_http(
        task_id=task_id,
        url_path=SYNC_TASK_PATH,
        payload=job.to_dict(),
    )
    logger.info(
        "full sync requested",
        extra={"extra_fields": {"channel_id": channel_id, "task_id": task_id, "enqueued": enqueued}},
    )
    return {"task_id": task_id, "sync_log_id": sync_log_id, "enqueued": enqueued}
