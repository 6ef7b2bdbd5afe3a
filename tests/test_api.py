"""HTTP tests for the FastAPI surface (TestClient, domain calls mocked)."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from roomledger.api.factory import create_app, wire_channel_sync
from roomledger.domain.errors import (
    ChannelNotConfiguredError,
    ChannelNotFoundError,
    ChannelSyncError,
    OverbookingError,
    WebhookSignatureError,
)
from roomledger.domain.events import StayCreated, get_event_bus
from roomledger.tasks.contracts import ChannelSyncJob

WEBHOOK = "/webhooks/channels/booking-com"
PROCESS = "roomledger.api.routes.webhooks_channels.process_webhook"


@pytest.fixture
def client():
    return TestClient(create_app(role="public"))


@pytest.fixture
def worker_client():
    return TestClient(create_app(role="worker"))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "roomledger"}


def test_correlation_id_is_echoed(client):
    response = client.get("/health", headers={"X-Correlation-ID": "cid-123"})
    assert response.headers["X-Correlation-ID"] == "cid-123"


def test_correlation_id_is_generated(client):
    assert client.get("/health").headers["X-Correlation-ID"]


class TestBookingComWebhook:
    def test_passes_raw_bytes_and_signature(self, client):
        body = b'{"hotel_id": "H-100",  "event": "new_reservation"}'
        with patch(PROCESS, return_value={"event": "new_reservation", "result": "created", "stay_id": "s1"}) as process:
            response = client.post(
                WEBHOOK,
                content=body,
                headers={"X-Booking-Signature": "abc", "Content-Type": "application/json"},
            )

        assert response.status_code == 200
        assert response.json() == {"ok": True, "event": "new_reservation", "result": "created", "stay_id": "s1"}
        process.assert_called_once_with(body, "abc")

    def test_duplicate_is_200(self, client):
        with patch(PROCESS, return_value={"event": "new_reservation", "result": "duplicate", "stay_id": "s1"}):
            assert client.post(WEBHOOK, content=b"{}").status_code == 200

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (WebhookSignatureError("signature mismatch"), 401, "WEBHOOK_SIGNATURE_INVALID"),
            (ChannelNotFoundError("booking_com:H-9"), 404, "CHANNEL_NOT_FOUND"),
            (ChannelNotConfiguredError("ch-1", "webhook_secret"), 503, "CHANNEL_NOT_CONFIGURED"),
            (OverbookingError("room-1", []), 409, "OVERBOOKING_DETECTED"),
        ],
    )
    def test_errors_use_envelope(self, client, exc, status, code):
        with patch(PROCESS, side_effect=exc):
            response = client.post(WEBHOOK, content=b"{}")

        assert response.status_code == status
        error = response.json()["error"]
        assert error["code"] == code
        assert set(error) == {"code", "message", "details"}


class TestSyncTask:
    def _payload(self):
        return ChannelSyncJob(
            task_id="channel-sync:s1:c1:close_room",
            sync_log_id="log-1",
            channel_id="c1",
            property_id="p1",
            action="close_room",
        ).to_dict()

    def test_runs_job(self, worker_client):
        with patch("roomledger.api.task_auth.verify_task_auth", return_value=True), patch(
            "roomledger.api.routes.tasks_channels.run_sync_job", return_value={"status": "success", "mode": "push"}
        ) as run:
            response = worker_client.post("/tasks/channels/sync", json=self._payload())

        assert response.status_code == 200
        assert response.json()["task_id"] == "channel-sync:s1:c1:close_room"
        assert run.call_args.args[0].sync_log_id == "log-1"

    def test_channel_failure_is_retryable(self, worker_client):
        with patch("roomledger.api.task_auth.verify_task_auth", return_value=True), patch(
            "roomledger.api.routes.tasks_channels.run_sync_job",
            side_effect=ChannelSyncError("booking.com availability push failed"),
        ):
            response = worker_client.post("/tasks/channels/sync", json=self._payload())
        assert response.status_code == 502

    def test_not_configured_is_503(self, worker_client):
        with patch("roomledger.api.task_auth.verify_task_auth", return_value=True), patch(
            "roomledger.api.routes.tasks_channels.run_sync_job",
            side_effect=ChannelNotConfiguredError("c1", "api_url"),
        ):
            response = worker_client.post("/tasks/channels/sync", json=self._payload())
        assert response.status_code == 503
        assert response.json()["ok"] is False

    def test_poll_ical(self, worker_client):
        with patch("roomledger.api.task_auth.verify_task_auth", return_value=True), patch(
            "roomledger.api.routes.tasks_channels.poll_all_ical_channels",
            return_value={"channels": 0, "results": {}},
        ):
            response = worker_client.post("/tasks/channels/poll-ical")
        assert response.json() == {"ok": True, "channels": 0, "results": {}}


def test_sync_wiring_is_not_duplicated():
    create_app(role="public")
    create_app(role="worker")
    wire_channel_sync()

    assert len(get_event_bus().handlers_for(StayCreated)) == 1
