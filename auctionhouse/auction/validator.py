"""Bid validation rules.

Everything here is pure: the functions look at an auction snapshot and a
proposed bid and decide, without touching storage or the clock. The engine
supplies ``now`` and commits whatever :func:`apply_decision` produces.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from .models import BIDDABLE_STATUSES, Auction, RejectionReason


@dataclass(frozen=True)
class BiddingPolicy:
    allow_self_outbid: bool = False


DEFAULT_POLICY = BiddingPolicy()


@dataclass(frozen=True)
class Accepted:
    amount: Decimal
    minimum_amount: Decimal
    reserve_met: bool
    new_end_at: Optional[datetime] = None


@dataclass(frozen=True)
class Rejected:
    reason: RejectionReason
    message: str
    minimum_amount: Optional[Decimal] = None


Decision = Union[Accepted, Rejected]


def minimum_acceptable(auction: Auction) -> Decimal:
    if auction.current_bid is not None:
        return auction.current_bid + auction.min_increment
    return max(auction.start_price, auction.min_increment)


def check_open_for_bids(auction: Auction, now: datetime) -> Optional[Rejected]:
    """Status and deadline checks shared by bids, buy-now and commitments."""
    if auction.status not in BIDDABLE_STATUSES:
        return Rejected(
            RejectionReason.AUCTION_NOT_ACTIVE,
            f"auction is not accepting bids (status: {auction.status.value})",
        )
    if now >= auction.end_at:
        return Rejected(RejectionReason.AUCTION_ENDED, "auction has already ended")
    return None


def extended_end(auction: Auction, now: datetime) -> Optional[datetime]:
    """New deadline when a bid at ``now`` lands inside the anti-snipe window."""
    if not auction.auto_extend or auction.extend_minutes <= 0:
        return None
    window = timedelta(minutes=auction.extend_minutes)
    if auction.end_at - now > window:
        return None
    candidate = now + window
    if candidate <= auction.end_at:
        return None
    return candidate


def validate_bid(
    auction: Auction,
    bidder_id: str,
    amount: Decimal,
    now: datetime,
    policy: BiddingPolicy = DEFAULT_POLICY,
) -> Decision:
    closed = check_open_for_bids(auction, now)
    if closed is not None:
        return closed
    if auction.seller_id is not None and bidder_id == auction.seller_id:
        return Rejected(
            RejectionReason.SELLER_CANNOT_BID, "sellers cannot bid on their own auctions"
        )
    minimum = minimum_acceptable(auction)
    if amount < minimum:
        return Rejected(
            RejectionReason.BID_TOO_LOW,
            f"bid must be at least {minimum}",
            minimum_amount=minimum,
        )
    if not policy.allow_self_outbid and auction.leader_id == bidder_id:
        return Rejected(
            RejectionReason.ALREADY_HIGH_BIDDER,
            "you already hold the highest bid",
        )
    reserve_met = auction.reserve_met or (
        auction.reserve_price is None or amount >= auction.reserve_price
    )
    return Accepted(
        amount=amount,
        minimum_amount=minimum,
        reserve_met=reserve_met,
        new_end_at=extended_end(auction, now),
    )


def apply_decision(
    auction: Auction,
    bidder_id: str,
    decision: Accepted,
    now: datetime,
) -> Auction:
    """Return a copy of ``auction`` with the accepted bid applied."""
    updated = auction.copy()
    updated.current_bid = decision.amount
    updated.leader_id = bidder_id
    updated.reserve_met = decision.reserve_met
    updated.bid_count = auction.bid_count + 1
    if decision.new_end_at is not None:
        updated.end_at = decision.new_end_at
        updated.extension_count = auction.extension_count + 1
        updated.last_extended_at = now
    return updated
