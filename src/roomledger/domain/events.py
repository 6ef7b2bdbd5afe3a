"""Lifecycle events and the in-process event bus.

Stay operations write each event to `outbox_events` inside their transaction
and publish the same immutable record here after commit. The outbox is an
audit trail only; no relay replays it, and a channel that missed an event is
repaired by a full sync. Subscribers (channel sync, notifications) never
reach back into the stay lifecycle; a failing subscriber is logged and does
not affect the publisher or other subscribers.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Callable, ClassVar

from roomledger.observability.logging import get_logger
from roomledger.observability.redaction import safe_log_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class StayEvent:
    stay_id: str
    property_id: str
    room_id: str
    guest_id: str | None
    check_in: date
    check_out: date
    total: int
    booking_number: str
    actor: str | None
    source: str

    event_type: ClassVar[str] = ""

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["check_in"] = self.check_in.isoformat()
        payload["check_out"] = self.check_out.isoformat()
        return payload


@dataclass(frozen=True)
class StayCreated(StayEvent):
    event_type: ClassVar[str] = "stay.created"


@dataclass(frozen=True)
class StayCancelled(StayEvent):
    reason: str | None = None

    event_type: ClassVar[str] = "stay.cancelled"


@dataclass(frozen=True)
class StayStatusChanged(StayEvent):
    old_status: str = ""
    new_status: str = ""

    event_type: ClassVar[str] = "stay.status_changed"


@dataclass(frozen=True)
class SyncError:
    """A channel propagation or import failed; operators should look."""

    property_id: str
    channel_id: str
    channel_kind: str
    event_type: str
    error: str
    sync_log_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


Handler = Callable[[Any], None]


class EventBus:
    """Typed publish/subscribe keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_cls: type, handler: Handler) -> None:
        if handler not in self._handlers[event_cls]:
            self._handlers[event_cls].append(handler)

    def unsubscribe(self, event_cls: type, handler: Handler) -> None:
        if handler in self._handlers.get(event_cls, []):
            self._handlers[event_cls].remove(handler)

    def handlers_for(self, event_cls: type) -> list[Handler]:
        return list(self._handlers.get(event_cls, []))

    def publish(self, event: Any) -> int:
        """Deliver to every handler of the event's exact class.

        Returns:
            Number of handlers that completed without raising.
        """
        delivered = 0
        for handler in self.handlers_for(type(event)):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "event handler failed",
                    extra={
                        "extra_fields": safe_log_context(
                            event=type(event).__name__,
                            handler=getattr(handler, "__qualname__", repr(handler)),
                        )
                    },
                )
        return delivered

    def clear(self) -> None:
        self._handlers.clear()


_event_bus = EventBus()


def get_event_bus() -> EventBus:
    """Process-wide bus (tests call clear() between cases)."""
    return _event_bus
