"""Auction lifecycle finite state machine."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from ..auction.models import AuctionStatus, Auction
from ..errors import InvalidTransition


class LifecycleEvent(str, Enum):
    START = "start"
    WIND_DOWN = "wind_down"
    REOPEN = "reopen"
    CLOSE = "close"
    ARCHIVE = "archive"


_TRANSITIONS = {
    (AuctionStatus.SCHEDULED, LifecycleEvent.START): AuctionStatus.RUNNING,
    # A sweep can miss whole windows when an auction is short or the scheduler lags.
    (AuctionStatus.SCHEDULED, LifecycleEvent.WIND_DOWN): AuctionStatus.ENDING_SOON,
    (AuctionStatus.SCHEDULED, LifecycleEvent.CLOSE): AuctionStatus.CLOSED,
    (AuctionStatus.RUNNING, LifecycleEvent.WIND_DOWN): AuctionStatus.ENDING_SOON,
    (AuctionStatus.RUNNING, LifecycleEvent.CLOSE): AuctionStatus.CLOSED,
    # Anti-snipe extensions can push the deadline back out of the window.
    (AuctionStatus.ENDING_SOON, LifecycleEvent.REOPEN): AuctionStatus.RUNNING,
    (AuctionStatus.ENDING_SOON, LifecycleEvent.CLOSE): AuctionStatus.CLOSED,
    (AuctionStatus.CLOSED, LifecycleEvent.ARCHIVE): AuctionStatus.ARCHIVED,
}

_EVENT_FOR_TARGET = {
    AuctionStatus.ENDING_SOON: LifecycleEvent.WIND_DOWN,
    AuctionStatus.CLOSED: LifecycleEvent.CLOSE,
    AuctionStatus.ARCHIVED: LifecycleEvent.ARCHIVE,
}


def transition(current: AuctionStatus, event: LifecycleEvent) -> AuctionStatus:
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise InvalidTransition(f"invalid transition from {current.value} via {event.value}") from exc


def event_towards(current: AuctionStatus, target: AuctionStatus) -> LifecycleEvent:
    if target is AuctionStatus.RUNNING:
        return LifecycleEvent.START if current is AuctionStatus.SCHEDULED else LifecycleEvent.REOPEN
    try:
        return _EVENT_FOR_TARGET[target]
    except KeyError as exc:
        raise InvalidTransition(f"no event leads from {current.value} to {target.value}") from exc


def derive_status(auction: Auction, now: datetime, ending_soon: timedelta) -> AuctionStatus:
    """Status the wall clock says the auction should be in.

    Closed and archived auctions stay where they are; only an administrator
    archives.
    """
    if auction.status in (AuctionStatus.CLOSED, AuctionStatus.ARCHIVED):
        return auction.status
    if now < auction.start_at:
        return auction.status
    if now >= auction.end_at:
        return AuctionStatus.CLOSED
    if auction.end_at - now <= ending_soon:
        return AuctionStatus.ENDING_SOON
    return AuctionStatus.RUNNING
