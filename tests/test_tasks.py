"""Tests for the tasks client, backends and sync job contract."""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as gcp_exceptions

from roomledger.tasks.client import TasksClient
from roomledger.tasks.contracts import ChannelSyncJob

_CLOUD_ENV = {
    "GOOGLE_CLOUD_PROJECT": "my-project",
    "WORKER_BASE_URL": "https://worker.example.com",
    "TASKS_OIDC_SERVICE_ACCOUNT": "tasks@my-project.iam.gserviceaccount.com",
    "TASKS_OIDC_AUDIENCE": "https://audience.example.com",
}


class TestTasksClient:
    def test_inline_records_task(self):
        client = TasksClient(backend="inline")

        assert client.enqueue_http("t1", "/tasks/x", {"a": 1}, correlation_id="c1") is True

        [task] = client.get_scheduled_tasks()
        assert task["task_id"] == "t1"
        assert task["correlation_id"] == "c1"

    def test_idempotent_by_task_id(self):
        client = TasksClient(backend="inline")

        assert client.enqueue_http("same", "/tasks/x", {}) is True
        assert client.enqueue_http("same", "/tasks/x", {}) is False
        assert len(client.get_scheduled_tasks()) == 1
        assert client.was_enqueued("same")

    def test_inline_handler_runs_for_path(self):
        client = TasksClient(backend="inline")
        seen = []
        client.register_inline_handler("/tasks/x", seen.append)

        client.enqueue_http("t1", "/tasks/x", {"a": 1})
        client.enqueue_http("t2", "/tasks/other", {"b": 2})

        assert seen == [{"a": 1}]

    def test_clear(self):
        client = TasksClient(backend="inline")
        client.enqueue_http("t1", "/tasks/x", {})
        client.clear()
        assert not client.was_enqueued("t1")
        assert client.get_scheduled_tasks() == []

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            TasksClient(backend="carrier-pigeon").enqueue_http("t1", "/tasks/x", {})

    def test_http_backend_delegates(self):
        with patch("roomledger.tasks.http_backend.enqueue_http", return_value=True) as backend:
            assert TasksClient(backend="http").enqueue_http("t1", "/tasks/x", {"a": 1}, "c1") is True
        backend.assert_called_once_with("t1", "/tasks/x", {"a": 1}, "c1", None)


class TestHttpBackend:
    def test_local_dev_uses_internal_secret(self, monkeypatch):
        from roomledger.tasks.http_backend import enqueue_http

        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "roomledger-tasks-local")
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        monkeypatch.setenv("WORKER_BASE_URL", "http://worker:9000")

        with patch("roomledger.tasks.http_backend.requests.post") as post:
            assert enqueue_http("t1", "/tasks/channels/sync", {"a": 1}) is True

        args, kwargs = post.call_args
        assert args[0] == "http://worker:9000/tasks/channels/sync"
        assert kwargs["headers"]["X-Internal-Task-Secret"] == "s3cret"
        assert kwargs["headers"]["X-Task-Id"] == "t1"

    def test_no_token_aborts(self, monkeypatch):
        from roomledger.tasks.http_backend import enqueue_http

        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        with patch("roomledger.tasks.http_backend._fetch_oidc_token", return_value=None):
            with patch("roomledger.tasks.http_backend.requests.post") as post:
                assert enqueue_http("t1", "/tasks/x", {}) is False
        post.assert_not_called()


class TestCloudTasksBackend:
    def _client(self):
        mock_client = MagicMock()
        mock_client.queue_path.return_value = "projects/p/locations/l/queues/q"
        response = MagicMock()
        response.name = "projects/p/locations/l/queues/q/tasks/t1"
        mock_client.create_task.return_value = response
        return mock_client

    def test_task_payload(self, monkeypatch):
        from roomledger.tasks.cloud_tasks_backend import enqueue_cloud_task

        for key, value in _CLOUD_ENV.items():
            monkeypatch.setenv(key, value)
        mock_client = self._client()

        with patch("roomledger.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient", return_value=mock_client):
            assert enqueue_cloud_task("channel-sync:s1:c1:close_room", "/tasks/channels/sync", {"k": 1}, "cid") is True

        task = mock_client.create_task.call_args.kwargs["task"]
        assert task["name"] == "projects/p/locations/l/queues/q/tasks/channel-sync-s1-c1-close_room"
        assert task["http_request"]["url"] == "https://worker.example.com/tasks/channels/sync"
        assert task["http_request"]["headers"]["X-Correlation-ID"] == "cid"
        assert task["http_request"]["oidc_token"]["audience"] == "https://audience.example.com"

    def test_already_exists_is_success(self, monkeypatch):
        from roomledger.tasks.cloud_tasks_backend import enqueue_cloud_task

        for key, value in _CLOUD_ENV.items():
            monkeypatch.setenv(key, value)
        mock_client = self._client()
        mock_client.create_task.side_effect = gcp_exceptions.AlreadyExists("dup")

        with patch("roomledger.tasks.cloud_tasks_backend.tasks_v2.CloudTasksClient", return_value=mock_client):
            assert enqueue_cloud_task("t1", "/tasks/x", {}) is True

    @pytest.mark.parametrize("missing", sorted(_CLOUD_ENV))
    def test_missing_env_fails_closed(self, monkeypatch, missing):
        from roomledger.tasks.cloud_tasks_backend import enqueue_cloud_task

        for key, value in _CLOUD_ENV.items():
            monkeypatch.setenv(key, value)
        monkeypatch.delenv(missing)

        with pytest.raises(RuntimeError, match=missing):
            enqueue_cloud_task("t1", "/tasks/x", {})


class TestChannelSyncJob:
    def _job(self, **overrides):
        fields = dict(
            task_id="channel-sync:s1:c1:close_room",
            sync_log_id="log-1",
            channel_id="c1",
            property_id="p1",
            action="close_room",
            room_id="room-1",
            external_id="BK-ROOM-7",
            stay_id="s1",
            booking_number="BK-2025-0001",
            date_from=date(2025, 3, 1),
            date_to=date(2025, 3, 4),
        )
        fields.update(overrides)
        return ChannelSyncJob(**fields)

    def test_from_dict_inverts_to_dict(self):
        job = self._job()
        assert ChannelSyncJob.from_dict(job.to_dict()) == job

    def test_payload_is_json_ready(self):
        payload = self._job().to_dict()
        assert payload["version"] == "v1"
        assert payload["date_from"] == "2025-03-01"

    def test_full_sync_has_no_dates(self):
        payload = self._job(action="full_sync", date_from=None, date_to=None, stay_id=None).to_dict()
        assert ChannelSyncJob.from_dict(payload).date_from is None

    @pytest.mark.parametrize(
        "change",
        [{"version": "v2"}, {"action": "delete_room"}, {"sync_log_id": ""}, {"channel_id": None}],
    )
    def test_rejects_bad_payload(self, change):
        payload = {**self._job().to_dict(), **change}
        with pytest.raises(ValueError):
            ChannelSyncJob.from_dict(payload)
