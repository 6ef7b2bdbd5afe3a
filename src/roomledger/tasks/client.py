"""Tasks client with idempotent enqueue.

Backends, selected with TASKS_BACKEND:
- inline (default): records the task and runs a locally registered handler
  for its path, if any (dev and tests)
- http: POSTs the task to the worker service
- cloud_tasks: creates a Google Cloud Tasks HTTP task
"""

import os
from datetime import datetime
from typing import Callable

from roomledger.observability.logging import get_logger

logger = get_logger(__name__)

InlineHandler = Callable[[dict], object]


class TasksClient:
    """Enqueue worker tasks, at most once per task_id per client.

    Channel sync jobs use deterministic task ids (stay + channel + action),
    so a repeated publish of the same event never enqueues a second job.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")
        self._seen_ids: set[str] = set()
        self._scheduled_tasks: list[dict] = []
        self._inline_handlers: dict[str, InlineHandler] = {}

    @property
    def backend(self) -> str:
        return self._backend

    def register_inline_handler(self, url_path: str, handler: InlineHandler) -> None:
        """Run `handler(payload)` for tasks on `url_path` in inline mode."""
        self._inline_handlers[url_path] = handler

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue a task for the worker endpoint `url_path`.

        Idempotent by task_id: a repeated id returns False without enqueuing.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/channels/sync").
            payload: Task data (ids and dates only, no guest contact data).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if enqueued, False if the task_id was already seen.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._seen_ids:
            return False

        self._seen_ids.add(task_id)

        if self._backend == "inline":
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            handler = self._inline_handlers.get(url_path)
            if handler is not None and schedule_time is None:
                handler(payload)
            return True

        elif self._backend == "http":
            from roomledger.tasks.http_backend import enqueue_http
            return enqueue_http(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        elif self._backend == "cloud_tasks":
            from roomledger.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time
            )

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._seen_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Tasks recorded by the inline backend (useful for testing)."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        """Forget seen task_ids and recorded tasks (useful for testing)."""
        self._seen_ids.clear()
        self._scheduled_tasks.clear()


_tasks_client: TasksClient | None = None


def get_tasks_client() -> TasksClient:
    """Process-wide client, created on first use."""
    global _tasks_client
    if _tasks_client is None:
        _tasks_client = TasksClient()
    return _tasks_client


def set_tasks_client(client: TasksClient | None) -> None:
    """Swap the process-wide client (tests)."""
    global _tasks_client
    _tasks_client = client
