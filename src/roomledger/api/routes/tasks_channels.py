"""Worker routes for channel synchronisation tasks."""

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from roomledger.api.task_auth import require_task_auth
from roomledger.domain.channel_inbound import poll_all_ical_channels
from roomledger.domain.channel_sync import run_sync_job
from roomledger.domain.errors import ChannelNotConfiguredError
from roomledger.observability.correlation import get_correlation_id
from roomledger.observability.logging import get_logger
from roomledger.observability.redaction import safe_log_context
from roomledger.tasks.contracts import ChannelSyncJob

router = APIRouter(
    prefix="/tasks/channels",
    tags=["tasks"],
    dependencies=[Depends(require_task_auth)],
)

logger = get_logger(__name__)


@router.post("/sync")
async def handle_sync(request: Request) -> JSONResponse:
    """Run one outbound sync job.

    200 on success or skipped channel, 400 on a malformed body, 503 when the
    channel lacks credentials. A failed channel call surfaces as 502 via the
    error handler so the queue retries.
    """
    correlation_id = get_correlation_id()
    try:
        payload: dict[str, Any] = await request.json()
        job = ChannelSyncJob.from_dict(payload)
    except ValueError as e:
        logger.warning(
            "invalid sync task body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid payload"})

    try:
        result = run_sync_job(job)
    except ChannelNotConfiguredError as e:
        # not retryable until someone fixes the credentials
        return JSONResponse(status_code=e.http_status, content={"ok": False, "error": e.to_dict()})

    return JSONResponse(status_code=200, content={"ok": True, "task_id": job.task_id, **result})


@router.post("/poll-ical")
def handle_poll_ical() -> JSONResponse:
    """Poll every active Airbnb calendar (scheduled by Cloud Scheduler)."""
    summary = poll_all_ical_channels()
    return JSONResponse(status_code=200, content={"ok": True, **summary})
