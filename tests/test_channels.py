"""Tests for channel management (registration, mappings, manual sync)."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2.errors
import pytest

from roomledger.domain import channels
from roomledger.domain.errors import AlreadyExistsError, ChannelNotFoundError, NotFoundError, ValidationError
from roomledger.infra.credentials_vault import decrypt_credentials, encrypt_credentials
from roomledger.tasks.client import get_tasks_client

MODULE = "roomledger.domain.channels"


def _row(**overrides):
    row = {
        "id": "ch-1",
        "property_id": "prop-1",
        "kind": "booking_com",
        "is_active": True,
        "external_account_id": "H-100",
        "credentials_enc": encrypt_credentials({"webhook_secret": "whsec_abcdef", "hotel_id": "H-100"}),
        "last_sync_at": None,
        "created_at": None,
    }
    row.update(overrides)
    return row


@pytest.fixture
def repo(monkeypatch, fake_txn):
    fake_txn(monkeypatch, MODULE)
    mocked = MagicMock()
    mocked.insert_channel.side_effect = lambda cur, **kw: _row(
        kind=kw["kind"],
        external_account_id=kw["external_account_id"],
        credentials_enc=kw["credentials_enc"],
    )
    mocked.get_channel.return_value = _row()
    mocked.update_channel.side_effect = lambda cur, **kw: _row(
        is_active=kw["is_active"], credentials_enc=kw["credentials_enc"]
    )
    mocked.replace_mappings.side_effect = lambda cur, **kw: kw["mappings"]
    mocked.insert_sync_log.return_value = "log-1"
    monkeypatch.setattr(channels, "channels_repo", mocked)
    return mocked


class TestCreateChannel:
    def test_credentials_are_encrypted_and_masked(self, repo):
        view = channels.create_channel(
            property_id="prop-1",
            kind="booking_com",
            credentials={"webhook_secret": "whsec_abcdef", "hotel_id": "H-100"},
        )

        stored = repo.insert_channel.call_args.kwargs
        assert "whsec_abcdef" not in stored["credentials_enc"]
        assert decrypt_credentials(stored["credentials_enc"])["webhook_secret"] == "whsec_abcdef"
        assert stored["external_account_id"] == "H-100"
        assert "credentials_enc" not in view
        assert view["credentials"]["webhook_secret"] == "********cdef"

    def test_unknown_kind(self, repo):
        with pytest.raises(ValidationError):
            channels.create_channel(property_id="prop-1", kind="expedia", credentials={})

    def test_missing_required_credential(self, repo):
        with pytest.raises(ValidationError) as exc:
            channels.create_channel(property_id="prop-1", kind="airbnb", credentials={})
        assert exc.value.details["missing"] == ["ical_url"]

    def test_duplicate_kind(self, repo):
        repo.insert_channel.side_effect = None
        repo.insert_channel.return_value = None
        with pytest.raises(AlreadyExistsError):
            channels.create_channel(
                property_id="prop-1", kind="airbnb", credentials={"ical_url": "https://x/cal.ics"}
            )


class TestUpdateChannel:
    def test_credentials_merge(self, repo):
        channels.update_channel(property_id="prop-1", channel_id="ch-1", credentials={"api_key": "k-1"})

        merged = decrypt_credentials(repo.update_channel.call_args.kwargs["credentials_enc"])
        assert merged == {"webhook_secret": "whsec_abcdef", "hotel_id": "H-100", "api_key": "k-1"}

    def test_deactivate(self, repo):
        view = channels.deactivate_channel(property_id="prop-1", channel_id="ch-1")
        assert view["is_active"] is False

    def test_unknown_channel(self, repo):
        repo.get_channel.return_value = None
        with pytest.raises(ChannelNotFoundError):
            channels.update_channel(property_id="prop-1", channel_id="nope", is_active=False)

    def test_cannot_activate_without_secret(self, repo):
        repo.get_channel.return_value = _row(is_active=False, credentials_enc=encrypt_credentials({}))
        with pytest.raises(ValidationError):
            channels.update_channel(property_id="prop-1", channel_id="ch-1", is_active=True)


class TestReplaceMappings:
    def test_replaces(self, repo):
        with patch(f"{MODULE}.rooms_exist", return_value={"room-1", "room-2"}):
            result = channels.replace_mappings(
                property_id="prop-1",
                channel_id="ch-1",
                mappings=[
                    {"room_id": "room-1", "external_id": " BK-1 "},
                    {"room_id": "room-2", "external_id": "BK-2"},
                ],
            )
        assert result[0] == {"room_id": "room-1", "external_id": "BK-1"}

    def test_room_of_another_property(self, repo):
        with patch(f"{MODULE}.rooms_exist", return_value={"room-1"}):
            with pytest.raises(NotFoundError):
                channels.replace_mappings(
                    property_id="prop-1",
                    channel_id="ch-1",
                    mappings=[
                        {"room_id": "room-1", "external_id": "BK-1"},
                        {"room_id": "room-x", "external_id": "BK-2"},
                    ],
                )
        repo.replace_mappings.assert_not_called()

    @pytest.mark.parametrize(
        "mappings",
        [
            [{"room_id": "room-1", "external_id": ""}],
            [{"room_id": "room-1", "external_id": "A"}, {"room_id": "room-1", "external_id": "B"}],
            [{"room_id": "room-1", "external_id": "A"}, {"room_id": "room-2", "external_id": "A"}],
        ],
    )
    def test_invalid(self, repo, mappings):
        with pytest.raises(ValidationError):
            channels.replace_mappings(property_id="prop-1", channel_id="ch-1", mappings=mappings)

    def test_unique_violation(self, repo):
        repo.replace_mappings.side_effect = psycopg2.errors.UniqueViolation()
        with patch(f"{MODULE}.rooms_exist", return_value={"room-1"}):
            with pytest.raises(AlreadyExistsError):
                channels.replace_mappings(
                    property_id="prop-1",
                    channel_id="ch-1",
                    mappings=[{"room_id": "room-1", "external_id": "BK-1"}],
                )


def test_list_sync_logs_clamps_limit(repo):
    channels.list_sync_logs(property_id="prop-1", channel_id="ch-1", limit=10_000, offset=-5)
    kwargs = repo.list_sync_logs.call_args.kwargs
    assert kwargs["limit"] == 200
    assert kwargs["offset"] == 0


class TestForceSync:
    def test_enqueues_full_sync(self, repo):
        with patch(f"{MODULE}.utc_now", return_value=datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)):
            result = channels.force_sync(property_id="prop-1", channel_id="ch-1")

        assert result == {
            "task_id": "channel-full-sync:ch-1:202503011230",
            "sync_log_id": "log-1",
            "enqueued": True,
        }
        [task] = get_tasks_client().get_scheduled_tasks()
        assert task["payload"]["action"] == "full_sync"

    def test_same_minute_is_deduplicated(self, repo):
        with patch(f"{MODULE}.utc_now", return_value=datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)):
            channels.force_sync(property_id="prop-1", channel_id="ch-1")
            again = channels.force_sync(property_id="prop-1", channel_id="ch-1")
        assert again["enqueued"] is False

    def test_inactive_channel(self, repo):
        repo.get_channel.return_value = _row(is_active=False)
        with pytest.raises(ValidationError):
            channels.force_sync(property_id="prop-1", channel_id="ch-1")
