"""Schema validation wrappers for broadcast event payloads."""

from __future__ import annotations

from typing import Iterable

from jsonschema import ValidationError

from ..errors import InvariantViolation
from ..validation.validator import get_schema_registry
from .payloads import AuctionEvent, EventKind


EVENT_SCHEMA_MAP = {
    EventKind.BID_NEW: "event_bid_new",
    EventKind.AUCTION_EXTENDED: "event_auction_extended",
    EventKind.AUCTION_CLOSED: "event_auction_closed",
    EventKind.AUCTION_STARTED: "event_status_changed",
    EventKind.AUCTION_ENDING_SOON: "event_status_changed",
}


def validate_event(event: AuctionEvent) -> str:
    schema = EVENT_SCHEMA_MAP.get(event.kind)
    if not schema:
        raise ValueError(f"unknown event kind {event.kind}")
    registry = get_schema_registry()
    registry.validate(schema, event.payload)
    return schema


def checked_events(events: Iterable[AuctionEvent]) -> list[AuctionEvent]:
    """Validate events before the state change that emits them is committed.

    A payload that breaks its schema means the auction state behind it is
    wrong, so it surfaces as ``InvariantViolation`` and nothing is written.
    """
    checked = list(events)
    for event in checked:
        try:
            validate_event(event)
        except ValidationError as exc:
            raise InvariantViolation(
                f"{event.kind.value} payload for auction {event.auction_id} "
                f"breaks its schema: {exc.message}"
            ) from exc
    return checked
