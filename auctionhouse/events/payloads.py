"""Broadcast event kinds and their payload shapes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..auction.models import Auction, Bid
from ..transport.timestamps import format_timestamp


class EventKind(str, Enum):
    BID_NEW = "bid:new"
    AUCTION_EXTENDED = "auction:extended"
    AUCTION_CLOSED = "auction:closed"
    AUCTION_STARTED = "auction:started"
    AUCTION_ENDING_SOON = "auction:ending_soon"


def channel_name(auction_id: str) -> str:
    return f"auction-{auction_id}"


@dataclass(frozen=True)
class AuctionEvent:
    kind: EventKind
    auction_id: str
    payload: dict[str, Any]

    def to_message(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "channel": channel_name(self.auction_id),
            "auction_id": self.auction_id,
            "data": self.payload,
        }


def bid_new(auction: Auction, bid: Bid) -> AuctionEvent:
    return AuctionEvent(
        EventKind.BID_NEW,
        auction.auction_id,
        {
            "bid_id": bid.bid_id,
            "amount": str(bid.amount),
            "bidder_id": bid.bidder_id,
            "timestamp": format_timestamp(bid.created_at),
            "sequence": bid.sequence,
            "is_proxy_generated": bid.is_proxy_generated,
            "reserve_met": auction.reserve_met,
            "end_at": format_timestamp(auction.end_at),
        },
    )


def auction_extended(auction: Auction, extended_at: datetime) -> AuctionEvent:
    return AuctionEvent(
        EventKind.AUCTION_EXTENDED,
        auction.auction_id,
        {
            "new_end_at": format_timestamp(auction.end_at),
            "extension_count": auction.extension_count,
            "timestamp": format_timestamp(extended_at),
        },
    )


def auction_closed(
    auction: Auction, winning_bid: Optional[Bid], closed_at: datetime
) -> AuctionEvent:
    winner: Optional[dict[str, Any]] = None
    if winning_bid is not None:
        winner = {
            "bidder_id": winning_bid.bidder_id,
            "bid_id": winning_bid.bid_id,
            "amount": str(winning_bid.amount),
        }
    return AuctionEvent(
        EventKind.AUCTION_CLOSED,
        auction.auction_id,
        {
            "winner": winner,
            "final_bid": None if auction.current_bid is None else str(auction.current_bid),
            "reserve_met": auction.reserve_met,
            "timestamp": format_timestamp(closed_at),
        },
    )


def status_changed(auction: Auction, kind: EventKind, at: datetime) -> AuctionEvent:
    return AuctionEvent(
        kind,
        auction.auction_id,
        {
            "status": auction.status.value,
            "end_at": format_timestamp(auction.end_at),
            "timestamp": format_timestamp(at),
        },
    )
