"""Task contracts v1 - worker payloads.

Payloads carry ids, dates and external listing ids only; guest contact data
never travels through the queue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal

SYNC_ACTIONS = ("close_room", "open_room", "full_sync")


@dataclass(frozen=True)
class ChannelSyncJob:
    """One outbound propagation to one channel.

    Attributes:
        task_id: Deterministic id (stay, channel, action) for idempotency.
        sync_log_id: The pending sync log this job settles.
        channel_id: Target channel.
        property_id: Owning property.
        action: close_room, open_room or full_sync.
        room_id: Internal room (None for full_sync).
        external_id: Listing id on the channel (None for full_sync).
        stay_id: Originating stay (None for full_sync).
        booking_number: Originating stay's number, for the OTA reference.
        date_from: First night affected.
        date_to: Departure day (exclusive).
    """

    version: Literal["v1"] = field(default="v1", init=False)
    task_id: str = ""
    sync_log_id: str = ""
    channel_id: str = ""
    property_id: str = ""
    action: str = ""
    room_id: str | None = None
    external_id: str | None = None
    stay_id: str | None = None
    booking_number: str | None = None
    date_from: date | None = None
    date_to: date | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "task_id": self.task_id,
            "sync_log_id": self.sync_log_id,
            "channel_id": self.channel_id,
            "property_id": self.property_id,
            "action": self.action,
            "room_id": self.room_id,
            "external_id": self.external_id,
            "stay_id": self.stay_id,
            "booking_number": self.booking_number,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChannelSyncJob":
        """Rebuild from a task body.

        Raises:
            ValueError: Unsupported version, unknown action or missing ids.
        """
        if data.get("version") != "v1":
            raise ValueError(f"Unsupported version: {data.get('version')}")
        if data.get("action") not in SYNC_ACTIONS:
            raise ValueError(f"Unknown sync action: {data.get('action')}")
        for key in ("task_id", "sync_log_id", "channel_id", "property_id"):
            if not data.get(key):
                raise ValueError(f"Missing field: {key}")
        return cls(
            task_id=data["task_id"],
            sync_log_id=data["sync_log_id"],
            channel_id=data["channel_id"],
            property_id=data["property_id"],
            action=data["action"],
            room_id=data.get("room_id"),
            external_id=data.get("external_id"),
            stay_id=data.get("stay_id"),
            booking_number=data.get("booking_number"),
            date_from=date.fromisoformat(data["date_from"]) if data.get("date_from") else None,
            date_to=date.fromisoformat(data["date_to"]) if data.get("date_to") else None,
        )
