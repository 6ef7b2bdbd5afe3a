"""HTTP backend for tasks - POSTs tasks straight to the worker service.

Used where api and worker run as separate containers on one network.
Authenticates with a Google-signed ID token, or with the shared
X-Internal-Task-Secret header in local dev.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from roomledger.observability.logging import get_logger
from roomledger.observability.redaction import safe_log_context

logger = get_logger(__name__)

# Must match task_auth.LOCAL_DEV_AUDIENCE
LOCAL_DEV_AUDIENCE = "roomledger-tasks-local"


def _worker_base_url() -> str:
    return os.environ.get("WORKER_BASE_URL", "http://worker:8000")


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch an ID token for `audience` from the metadata server or ADC.

    Returns:
        Signed ID token string, or None if fetching fails.
    """
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(audience=audience, error=str(e))},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """POST the task to the worker.

    Args:
        task_id: Unique task identifier (sent as X-Task-Id).
        url_path: Worker endpoint path.
        payload: Task payload.
        correlation_id: Optional correlation ID for tracing.
        schedule_time: Not supported here; the task is dropped with a warning.

    Returns:
        True if the worker answered 2xx, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
        )
        return True

    base_url = _worker_base_url()
    url = f"{base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-ID": correlation_id or "",
        "X-Task-Id": task_id,
    }

    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == LOCAL_DEV_AUDIENCE:
        secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        if secret:
            headers["X-Internal-Task-Secret"] = secret
    else:
        token = _fetch_oidc_token(base_url)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=int(os.environ.get("TASKS_HTTP_TIMEOUT", "30")),
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": {"task_id": task_id, "url_path": url_path, "error": str(e)}},
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": {"task_id": task_id, "url_path": url_path}},
    )
    return True
