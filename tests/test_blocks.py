"""Tests for owner blocks."""

from datetime import date
from unittest.mock import patch

import pytest

from roomledger.domain.blocks import create_block, remove_block
from roomledger.domain.errors import CheckoutBeforeCheckinError, NotFoundError, OverbookingError

MODULE = "roomledger.domain.blocks"


@pytest.fixture
def patched(monkeypatch, fake_txn):
    fake_txn(monkeypatch, MODULE)
    with patch(f"{MODULE}.get_room", return_value={"id": "room-1", "status": "active"}) as get_room, patch(
        f"{MODULE}.assert_available"
    ) as available, patch(f"{MODULE}.blocks_repo") as repo:
        repo.insert_block.return_value = {"id": "block-1"}
        yield get_room, available, repo


def test_create_checks_availability_under_room_lock(patched):
    get_room, available, repo = patched

    block = create_block(property_id="prop-1", room_id="room-1", date_from="2025-03-01", date_to="2025-03-03")

    assert block == {"id": "block-1"}
    assert get_room.call_args.kwargs["for_update"] is True
    assert available.call_args.kwargs["check_out"] == date(2025, 3, 3)


def test_conflict(patched):
    _, available, repo = patched
    available.side_effect = OverbookingError("room-1", [date(2025, 3, 1)])

    with pytest.raises(OverbookingError):
        create_block(property_id="prop-1", room_id="room-1", date_from="2025-03-01", date_to="2025-03-03")
    repo.insert_block.assert_not_called()


def test_empty_range(patched):
    with pytest.raises(CheckoutBeforeCheckinError):
        create_block(property_id="prop-1", room_id="room-1", date_from="2025-03-03", date_to="2025-03-03")


def test_remove_unknown(patched):
    _, _, repo = patched
    repo.delete_block.return_value = None
    with pytest.raises(NotFoundError):
        remove_block(property_id="prop-1", block_id="nope")
