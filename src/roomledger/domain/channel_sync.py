"""Outbound channel synchronisation.

A stay created here closes its dates on every other channel that lists the
room; a cancelled stay re-opens them. For each active mapped channel the
synchronizer writes a `pending` sync log and enqueues one job. Jobs run on the
worker, independently per channel, and settle their log to success or error.

Nothing here holds a lock on the stay: fan-out happens after the stay's
transaction has committed, and a failing channel never affects the others or
the stay itself.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable

from roomledger.channels import booking_com
from roomledger.domain.availability import room_calendar
from roomledger.domain.dates import parse_iso_date
from roomledger.domain.errors import (
    ChannelNotConfiguredError,
    ChannelSyncError,
    EngineError,
    failure_message,
)
from roomledger.domain.events import (
    EventBus,
    StayCancelled,
    StayCreated,
    StayEvent,
    SyncError,
    get_event_bus,
)
from roomledger.infra.credentials_vault import decrypt_credentials
from roomledger.infra.db import txn
from roomledger.infra.repositories import channels_repository as channels_repo
from roomledger.infra.time import utc_today
from roomledger.observability.correlation import get_correlation_id
from roomledger.observability.logging import get_logger
from roomledger.tasks.client import TasksClient, get_tasks_client
from roomledger.tasks.contracts import ChannelSyncJob

logger = get_logger(__name__)

SYNC_TASK_PATH = "/tasks/channels/sync"
FULL_SYNC_HORIZON_DAYS = 365

_ACTION_FOR_EVENT = {
    StayCreated: "close_room",
    StayCancelled: "open_room",
}


def sync_task_id(stay_id: str, channel_id: str, action: str) -> str:
    return f"channel-sync:{stay_id}:{channel_id}:{action}"


class ChannelSynchronizer:
    """Bus subscriber that turns stay events into per-channel sync jobs."""

    def __init__(
        self,
        tasks_client: TasksClient | Callable[[], TasksClient] = get_tasks_client,
        bus: EventBus | None = None,
    ) -> None:
        self._tasks_client = tasks_client
        self._bus = bus or get_event_bus()

    @property
    def tasks_client(self) -> TasksClient:
        if isinstance(self._tasks_client, TasksClient):
            return self._tasks_client
        return self._tasks_client()

    def register(self) -> None:
        self._bus.subscribe(StayCreated, self.on_stay_event)
        self._bus.subscribe(StayCancelled, self.on_stay_event)
        self._bus.subscribe(SyncError, log_sync_error)

    def on_stay_event(self, event: StayEvent) -> int:
        """Fan out one stay event; returns the number of jobs enqueued."""
        action = _ACTION_FOR_EVENT[type(event)]
        with txn() as cur:
            targets = channels_repo.mapped_channels_for_room(
                cur, property_id=event.property_id, room_id=event.room_id
            )

        enqueued = 0
        for target in targets:
            # Inbound OTA stays are already closed on their own channel.
            if target["kind"] == event.source:
                continue
            try:
                if self._enqueue_one(event, action, target):
                    enqueued += 1
            except Exception as e:
                logger.exception(
                    "channel sync enqueue failed",
                    extra={
                        "extra_fields": {
                            "stay_id": event.stay_id,
                            "channel_id": target["channel_id"],
                            "action": action,
                        }
                    },
                )
                self._bus.publish(
                    SyncError(
                        property_id=event.property_id,
                        channel_id=target["channel_id"],
                        channel_kind=target["kind"],
                        event_type=action,
                        error=str(e),
                    )
                )
        return enqueued

    def _enqueue_one(self, event: StayEvent, action: str, target: dict) -> bool:
        task_id = sync_task_id(event.stay_id, target["channel_id"], action)
        client = self.tasks_client
        if client.was_enqueued(task_id):
            return False

        job_fields: dict[str, Any] = {
            "channel_id": target["channel_id"],
            "property_id": event.property_id,
            "action": action,
            "room_id": event.room_id,
            "external_id": target["external_id"],
            "stay_id": event.stay_id,
            "booking_number": event.booking_number,
            "date_from": event.check_in,
            "date_to": event.check_out,
        }
        with txn() as cur:
            sync_log_id = channels_repo.insert_sync_log(
                cur,
                channel_id=target["channel_id"],
                event_type=action,
                status="pending",
                payload={**job_fields, "task_id": task_id},
            )
        job = ChannelSyncJob(task_id=task_id, sync_log_id=sync_log_id, **job_fields)

        ok = client.enqueue_http(
            task_id=task_id,
            url_path=SYNC_TASK_PATH,
            payload=job.to_dict(),
            correlation_id=get_correlation_id() or None,
        )
        if not ok:
            with txn() as cur:
                channels_repo.settle_sync_log(
                    cur, sync_log_id=sync_log_id, status="error", error_message="enqueue failed"
                )
            raise ChannelSyncError("sync job could not be enqueued", {"task_id": task_id})
        return True


def log_sync_error(event: SyncError) -> None:
    """Operator-facing record of a failed propagation or import."""
    logger.error(
        "channel sync error",
        extra={"extra_fields": event.to_payload()},
    )


# --- worker side ----------------------------------------------------------


def _settle(job: ChannelSyncJob, status: str, error_message: str | None = None, result: dict | None = None) -> None:
    with txn() as cur:
        settled = channels_repo.settle_sync_log(
            cur, sync_log_id=job.sync_log_id, status=status, error_message=error_message
        )
        if not settled:
            # retry of a job whose log is already final: append, never rewrite
            channels_repo.insert_sync_log(
                cur,
                channel_id=job.channel_id,
                event_type=job.action,
                status=status,
                payload={**job.to_dict(), "retry": True, "result": result},
                error_message=error_message,
            )
        if status == "success":
            channels_repo.touch_last_sync(cur, channel_id=job.channel_id)


def _push_booking_com(channel: dict, credentials: dict, job: ChannelSyncJob) -> dict:
    if job.action == "full_sync":
        return _full_sync_booking_com(channel, credentials, job)
    result = booking_com.push_availability(
        credentials,
        external_id=job.external_id or "",
        action="close" if job.action == "close_room" else "open",
        date_from=job.date_from,
        date_to=job.date_to,
        reference=job.task_id,
    )
    return {"mode": "push", "response": result}


def _full_sync_booking_com(channel: dict, credentials: dict, job: ChannelSyncJob) -> dict:
    """Close every occupied or blocked range on every mapped listing."""
    today = utc_today()
    horizon = today + timedelta(days=FULL_SYNC_HORIZON_DAYS)
    with txn() as cur:
        mappings = channels_repo.list_mappings(cur, channel_id=channel["id"])
        calendar = room_calendar(
            cur, property_id=channel["property_id"], date_from=today, date_to=horizon
        )

    pushed = 0
    for mapping in mappings:
        entry = calendar.get(mapping["room_id"], {"stays": [], "blocks": []})
        ranges = [(s["check_in"], s["check_out"]) for s in entry["stays"]]
        ranges += [(b["date_from"], b["date_to"]) for b in entry["blocks"]]
        for start, end in ranges:
            booking_com.push_availability(
                credentials,
                external_id=mapping["external_id"],
                action="close",
                date_from=parse_iso_date(start),
                date_to=parse_iso_date(end),
                reference=job.task_id,
            )
            pushed += 1
    return {"mode": "push", "ranges_pushed": pushed}


def _sync_airbnb(channel: dict, credentials: dict, job: ChannelSyncJob) -> dict:
    """Airbnb reads our exported calendar; only a full sync does any work."""
    if job.action != "full_sync":
        return {"mode": "ical_pull"}
    from roomledger.domain.channel_inbound import import_calendar

    return {"mode": "ical_pull", **import_calendar(channel, credentials)}


ADAPTERS: dict[str, Callable[[dict, dict, ChannelSyncJob], dict]] = {
    "booking_com": _push_booking_com,
    "airbnb": _sync_airbnb,
}


def run_sync_job(job: ChannelSyncJob, *, bus: EventBus | None = None) -> dict:
    """Execute one sync job against its channel and settle its log.

    Every failure past the channel lookup settles the log as error and
    publishes SyncError exactly once before the exception propagates.

    Returns:
        {"status": "success", ...adapter result} or {"status": "skipped"}.

    Raises:
        ChannelSyncError: The channel call failed. The worker answers 5xx
            so the queue retries.
        ChannelNotConfiguredError: Credentials are missing something the
            adapter needs.
        Exception: Anything unexpected (undecryptable credentials, a bad
            channel response, a database error) after it has been recorded.
    """
    bus = bus or get_event_bus()
    with txn() as cur:
        channel = channels_repo.get_channel(cur, channel_id=job.channel_id)

    if channel is None or not channel["is_active"]:
        _settle(job, "error", "channel missing or inactive")
        logger.info(
            "sync job skipped for inactive channel",
            extra={"extra_fields": {"channel_id": job.channel_id, "task_id": job.task_id}},
        )
        return {"status": "skipped"}

    adapter = ADAPTERS.get(channel["kind"])
    try:
        if adapter is None:
            raise ChannelNotConfiguredError(channel["id"], "adapter")
        credentials = decrypt_credentials(channel["credentials_enc"])
        result = adapter(channel, credentials, job)
    except Exception as e:
        message = failure_message(e)
        if not isinstance(e, EngineError):
            logger.exception(
                "sync job crashed",
                extra={"extra_fields": {"channel_id": channel["id"], "task_id": job.task_id}},
            )
        _settle(job, "error", message)
        bus.publish(
            SyncError(
                property_id=channel["property_id"],
                channel_id=channel["id"],
                channel_kind=channel["kind"],
                event_type=job.action,
                error=message,
                sync_log_id=job.sync_log_id,
            )
        )
        raise

    _settle(job, "success", result=result)
    logger.info(
        "sync job completed",
        extra={
            "extra_fields": {
                "channel_id": channel["id"],
                "kind": channel["kind"],
                "action": job.action,
                "task_id": job.task_id,
            }
        },
    )
    return {"status": "success", **result}
