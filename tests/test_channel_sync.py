"""Tests for outbound channel synchronisation.

Database access is replaced by a mocked cursor plus mocked repository
functions; jobs go through the inline tasks backend.
"""

from __future__ import annotations

import base64
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
from cryptography.exceptions import InvalidTag

from roomledger.api.factory import _run_inline_sync
from roomledger.domain import channel_sync
from roomledger.domain.channel_sync import (
    SYNC_TASK_PATH,
    ChannelSynchronizer,
    run_sync_job,
    sync_task_id,
)
from roomledger.domain.errors import ChannelSyncError
from roomledger.domain.events import EventBus, StayCancelled, StayCreated, SyncError, get_event_bus
from roomledger.infra.credentials_vault import encrypt_credentials
from roomledger.tasks.client import TasksClient
from roomledger.tasks.contracts import ChannelSyncJob

BOOKING = {"channel_id": "ch-booking", "kind": "booking_com", "external_id": "BK-ROOM-7"}
AIRBNB = {"channel_id": "ch-airbnb", "kind": "airbnb", "external_id": "AB-1"}


@pytest.fixture
def repo(monkeypatch, fake_txn):
    """Mocked channels repository, as seen from the channel_sync module."""
    fake_txn(monkeypatch, "roomledger.domain.channel_sync")
    mocked = MagicMock()
    mocked.mapped_channels_for_room.return_value = [BOOKING, AIRBNB]
    mocked.insert_sync_log.side_effect = lambda cur, **kw: f"log-{kw['channel_id']}"
    mocked.settle_sync_log.return_value = True
    monkeypatch.setattr(channel_sync, "channels_repo", mocked)
    return mocked


def _event(cls=StayCreated, **overrides):
    fields = dict(
        stay_id="stay-1",
        property_id="prop-1",
        room_id="room-1",
        guest_id="guest-1",
        check_in=date(2025, 3, 1),
        check_out=date(2025, 3, 4),
        total=1_500_000,
        booking_number="BK-2025-0001",
        actor="user-1",
        source="direct",
    )
    fields.update(overrides)
    return cls(**fields)


class TestFanOut:
    def test_one_job_per_mapped_channel(self, repo):
        client = TasksClient(backend="inline")
        sync = ChannelSynchronizer(tasks_client=client, bus=EventBus())

        assert sync.on_stay_event(_event()) == 2

        tasks = client.get_scheduled_tasks()
        assert [t["task_id"] for t in tasks] == [
            "channel-sync:stay-1:ch-booking:close_room",
            "channel-sync:stay-1:ch-airbnb:close_room",
        ]
        assert all(t["url_path"] == SYNC_TASK_PATH for t in tasks)
        job = ChannelSyncJob.from_dict(tasks[0]["payload"])
        assert job.sync_log_id == "log-ch-booking"
        assert job.external_id == "BK-ROOM-7"
        assert (job.date_from, job.date_to) == (date(2025, 3, 1), date(2025, 3, 4))

    def test_pending_log_written_per_channel(self, repo):
        sync = ChannelSynchronizer(tasks_client=TasksClient(backend="inline"), bus=EventBus())

        sync.on_stay_event(_event())

        statuses = [c.kwargs["status"] for c in repo.insert_sync_log.call_args_list]
        assert statuses == ["pending", "pending"]

    def test_cancel_opens_room(self, repo):
        client = TasksClient(backend="inline")
        sync = ChannelSynchronizer(tasks_client=client, bus=EventBus())

        sync.on_stay_event(_event(StayCancelled, reason="guest asked"))

        assert {t["payload"]["action"] for t in client.get_scheduled_tasks()} == {"open_room"}

    def test_skips_channel_the_stay_came_from(self, repo):
        client = TasksClient(backend="inline")
        sync = ChannelSynchronizer(tasks_client=client, bus=EventBus())

        assert sync.on_stay_event(_event(source="booking_com")) == 1
        assert client.get_scheduled_tasks()[0]["payload"]["channel_id"] == "ch-airbnb"

    def test_repeated_event_is_not_enqueued_twice(self, repo):
        client = TasksClient(backend="inline")
        sync = ChannelSynchronizer(tasks_client=client, bus=EventBus())

        sync.on_stay_event(_event())
        assert sync.on_stay_event(_event()) == 0

        assert len(client.get_scheduled_tasks()) == 2
        assert repo.insert_sync_log.call_count == 2

    def test_failed_enqueue_settles_log_and_signals(self, repo):
        bus = EventBus()
        errors = []
        bus.subscribe(SyncError, errors.append)
        client = MagicMock(spec=TasksClient)
        client.was_enqueued.return_value = False
        client.enqueue_http.side_effect = [False, True]
        sync = ChannelSynchronizer(tasks_client=client, bus=bus)

        assert sync.on_stay_event(_event()) == 1

        repo.settle_sync_log.assert_called_once()
        assert repo.settle_sync_log.call_args.kwargs["status"] == "error"
        assert [e.channel_id for e in errors] == ["ch-booking"]

    def test_no_mapped_channels(self, repo):
        repo.mapped_channels_for_room.return_value = []
        sync = ChannelSynchronizer(tasks_client=TasksClient(backend="inline"), bus=EventBus())

        assert sync.on_stay_event(_event()) == 0

    def test_register_subscribes_both_events(self):
        bus = EventBus()
        sync = ChannelSynchronizer(tasks_client=TasksClient(backend="inline"), bus=bus)
        sync.register()

        assert bus.handlers_for(StayCreated) == [sync.on_stay_event]
        assert bus.handlers_for(StayCancelled) == [sync.on_stay_event]


def test_sync_task_id_is_deterministic():
    assert sync_task_id("s", "c", "open_room") == sync_task_id("s", "c", "open_room")
    assert sync_task_id("s", "c", "open_room") != sync_task_id("s", "c", "close_room")


class TestRunSyncJob:
    def _job(self, **overrides):
        fields = dict(
            task_id="channel-sync:stay-1:ch-booking:close_room",
            sync_log_id="log-1",
            channel_id="ch-booking",
            property_id="prop-1",
            action="close_room",
            room_id="room-1",
            external_id="BK-ROOM-7",
            stay_id="stay-1",
            booking_number="BK-2025-0001",
            date_from=date(2025, 3, 1),
            date_to=date(2025, 3, 4),
        )
        fields.update(overrides)
        return ChannelSyncJob(**fields)

    def _channel(self, kind="booking_com", is_active=True, credentials=None):
        return {
            "id": "ch-booking",
            "property_id": "prop-1",
            "kind": kind,
            "is_active": is_active,
            "credentials_enc": encrypt_credentials(
                credentials or {"api_url": "https://ota.example.com", "webhook_secret": "s"}
            ),
        }

    def test_success_settles_and_touches(self, repo):
        repo.get_channel.return_value = self._channel()
        with patch("roomledger.domain.channel_sync.booking_com.push_availability", return_value={}) as push:
            result = run_sync_job(self._job(), bus=EventBus())

        assert result["status"] == "success"
        assert push.call_args.kwargs["action"] == "close"
        assert push.call_args.kwargs["external_id"] == "BK-ROOM-7"
        repo.settle_sync_log.assert_called_once()
        assert repo.settle_sync_log.call_args.kwargs["status"] == "success"
        repo.touch_last_sync.assert_called_once()

    def test_open_room_pushes_open(self, repo):
        repo.get_channel.return_value = self._channel()
        with patch("roomledger.domain.channel_sync.booking_com.push_availability", return_value={}) as push:
            run_sync_job(self._job(action="open_room"), bus=EventBus())
        assert push.call_args.kwargs["action"] == "open"

    def test_channel_failure_settles_error_and_raises(self, repo):
        repo.get_channel.return_value = self._channel()
        bus = EventBus()
        errors = []
        bus.subscribe(SyncError, errors.append)

        with patch(
            "roomledger.domain.channel_sync.booking_com.push_availability",
            side_effect=ChannelSyncError("booking.com availability push failed"),
        ):
            with pytest.raises(ChannelSyncError):
                run_sync_job(self._job(), bus=bus)

        assert repo.settle_sync_log.call_args.kwargs["status"] == "error"
        repo.touch_last_sync.assert_not_called()
        assert errors[0].sync_log_id == "log-1"

    def test_unexpected_adapter_failure_settles_error_and_signals(self, repo):
        repo.get_channel.return_value = self._channel()
        bus = EventBus()
        errors = []
        bus.subscribe(SyncError, errors.append)

        with patch(
            "roomledger.domain.channel_sync.booking_com.push_availability",
            side_effect=ValueError("unexpected response shape"),
        ):
            with pytest.raises(ValueError):
                run_sync_job(self._job(), bus=bus)

        assert repo.settle_sync_log.call_args.kwargs["status"] == "error"
        assert repo.settle_sync_log.call_args.kwargs["error_message"] == "ValueError: unexpected response shape"
        assert [e.sync_log_id for e in errors] == ["log-1"]

    def test_undecryptable_credentials_settle_error(self, repo):
        channel = self._channel()
        channel["credentials_enc"] = base64.b64encode(b"\x00" * 40).decode()
        repo.get_channel.return_value = channel
        bus = EventBus()
        errors = []
        bus.subscribe(SyncError, errors.append)

        with pytest.raises(InvalidTag):
            run_sync_job(self._job(), bus=bus)

        assert repo.settle_sync_log.call_args.kwargs["status"] == "error"
        assert len(errors) == 1

    def test_inactive_channel_is_skipped(self, repo):
        repo.get_channel.return_value = self._channel(is_active=False)
        with patch("roomledger.domain.channel_sync.booking_com.push_availability") as push:
            assert run_sync_job(self._job(), bus=EventBus()) == {"status": "skipped"}
        push.assert_not_called()
        assert repo.settle_sync_log.call_args.kwargs["status"] == "error"

    def test_retry_after_settle_appends_new_log(self, repo):
        repo.get_channel.return_value = self._channel()
        repo.settle_sync_log.return_value = False
        with patch("roomledger.domain.channel_sync.booking_com.push_availability", return_value={}):
            run_sync_job(self._job(), bus=EventBus())

        appended = repo.insert_sync_log.call_args.kwargs
        assert appended["status"] == "success"
        assert appended["payload"]["retry"] is True

    def test_airbnb_push_is_a_no_op(self, repo):
        repo.get_channel.return_value = self._channel(kind="airbnb", credentials={"ical_url": "https://x/cal.ics"})
        assert run_sync_job(self._job(), bus=EventBus()) == {"status": "success", "mode": "ical_pull"}

    def test_full_sync_closes_occupied_ranges(self, repo):
        repo.get_channel.return_value = self._channel()
        repo.list_mappings.return_value = [{"room_id": "room-1", "external_id": "BK-ROOM-7"}]
        calendar = {
            "room-1": {
                "stays": [{"check_in": "2025-03-01", "check_out": "2025-03-04"}],
                "blocks": [{"date_from": "2025-04-01", "date_to": "2025-04-02"}],
            }
        }
        with patch("roomledger.domain.channel_sync.room_calendar", return_value=calendar):
            with patch("roomledger.domain.channel_sync.booking_com.push_availability", return_value={}) as push:
                result = run_sync_job(
                    self._job(action="full_sync", stay_id=None, date_from=None, date_to=None),
                    bus=EventBus(),
                )

        assert result["ranges_pushed"] == 2
        assert {c.kwargs["action"] for c in push.call_args_list} == {"close"}


def _booking_channel(cur=None, *, channel_id):
    return {
        "id": channel_id,
        "property_id": "prop-1",
        "kind": "booking_com",
        "is_active": True,
        "credentials_enc": encrypt_credentials({"api_url": "https://ota.example.com"}),
    }


class TestInlineExecution:
    """The inline backend runs each job inside on_stay_event."""

    def _wire(self, repo):
        repo.mapped_channels_for_room.return_value = [
            {"channel_id": "ch-a", "kind": "booking_com", "external_id": "A"},
            {"channel_id": "ch-b", "kind": "booking_com", "external_id": "B"},
        ]
        repo.get_channel.side_effect = _booking_channel
        client = TasksClient(backend="inline")
        client.register_inline_handler(SYNC_TASK_PATH, _run_inline_sync)
        errors = []
        get_event_bus().subscribe(SyncError, errors.append)
        return ChannelSynchronizer(tasks_client=client), errors

    @pytest.mark.parametrize(
        "failure",
        [ValueError("unexpected response shape"), ChannelSyncError("booking.com availability push failed")],
    )
    def test_failing_channel_does_not_stop_the_others(self, repo, failure):
        sync, errors = self._wire(repo)

        def push(credentials, *, external_id, **kwargs):
            if external_id == "A":
                raise failure
            return {}

        with patch("roomledger.domain.channel_sync.booking_com.push_availability", side_effect=push) as pushed:
            assert sync.on_stay_event(_event()) == 2

        assert pushed.call_count == 2
        settled = {c.kwargs["sync_log_id"]: c.kwargs["status"] for c in repo.settle_sync_log.call_args_list}
        assert settled == {"log-ch-a": "error", "log-ch-b": "success"}
        # signalled once by the job, not again by the enqueuing subscriber
        assert [e.channel_id for e in errors] == ["ch-a"]
