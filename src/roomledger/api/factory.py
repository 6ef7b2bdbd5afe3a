"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from roomledger.domain.channel_sync import SYNC_TASK_PATH, ChannelSynchronizer, run_sync_job
from roomledger.domain.errors import EngineError
from roomledger.domain.events import StayCreated, get_event_bus
from roomledger.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from roomledger.observability.logging import get_logger
from roomledger.tasks.client import get_tasks_client
from roomledger.tasks.contracts import ChannelSyncJob

from .routers import public, worker
from .routes import webhooks_channels

AppRole = Literal["public", "worker"]

logger = get_logger(__name__)


def _run_inline_sync(payload: dict) -> None:
    # run_sync_job has already settled the log and signalled SyncError; letting
    # the failure reach the enqueuing subscriber would signal it a second time
    try:
        run_sync_job(ChannelSyncJob.from_dict(payload))
    except Exception as e:
        logger.warning(
            "inline sync job failed",
            extra={
                "extra_fields": {
                    "task_id": payload.get("task_id"),
                    "code": e.code if isinstance(e, EngineError) else type(e).__name__,
                }
            },
        )


def wire_channel_sync() -> ChannelSynchronizer:
    """Subscribe outbound sync to stay events in this process.

    With the inline tasks backend the job also runs here, right after the
    stay commits; other backends deliver it to the worker.
    """
    get_tasks_client().register_inline_handler(SYNC_TASK_PATH, _run_inline_sync)
    for handler in get_event_bus().handlers_for(StayCreated):
        if isinstance(getattr(handler, "__self__", None), ChannelSynchronizer):
            return handler.__self__
    synchronizer = ChannelSynchronizer()
    synchronizer.register()
    return synchronizer


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.

    Returns:
        Configured FastAPI application.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]

    app = FastAPI(
        title="Roomledger",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.info
        log(
            "request failed",
            extra={
                "extra_fields": {
                    "path": request.url.path,
                    "code": exc.code,
                    "status": exc.http_status,
                }
            },
        )
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    app.include_router(public.router)
    app.include_router(webhooks_channels.router)

    if role == "worker":
        app.include_router(worker.router)

    wire_channel_sync()
    return app
