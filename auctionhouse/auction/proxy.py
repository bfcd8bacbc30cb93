"""Proxy (auto-bid) cascade resolution.

A cascade starts from the auction state right after an accepted bid. While
some commitment holder other than the current leader can still afford the
next acceptable amount, the weakest such holder counter-bids at ``min(own
maximum, leader ceiling + increment)``. The leader ceiling is the leader's own
commitment maximum, or their visible bid when they have none. A counter that
does not beat the ceiling still raises the price, and the stronger
commitment behind the old leader answers it in turn.

A later commitment that merely ties the leader's earlier one never counters,
so equal maximums settle on the commitment recorded first. Because the
weakest capable holder always moves, the holders that counter get strictly
stronger as the cascade runs: each commitment counters at most once and the
cascade produces at most one bid per active commitment. That bound is
enforced; crossing it means the ordering above is broken.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from ..errors import InvariantViolation
from .models import Auction, ProxyCommitment
from .validator import (
    DEFAULT_POLICY,
    Accepted,
    BiddingPolicy,
    Rejected,
    apply_decision,
    minimum_acceptable,
    validate_bid,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterBid:
    bidder_id: str
    decision: Accepted


@dataclass
class Resolution:
    auction: Auction
    counters: list[CounterBid] = field(default_factory=list)


class ProxyResolver:
    def __init__(self, policy: BiddingPolicy = DEFAULT_POLICY) -> None:
        self._policy = policy

    def resolve(
        self,
        auction: Auction,
        commitments: Iterable[ProxyCommitment],
        now: datetime,
    ) -> Resolution:
        """Run the cascade against ``auction`` and return the resulting state.

        The leader (normally the bidder who just acted) is never asked to
        counter their own bid. The stored commitments are only read.
        """
        by_bidder = {
            commitment.bidder_id: commitment
            for commitment in commitments
            if commitment.auction_id == auction.auction_id
        }
        resolution = Resolution(auction=auction)
        if auction.leader_id is None or auction.current_bid is None or not by_bidder:
            return resolution
        cap = len(by_bidder)
        state = auction
        while True:
            challenger = self._next_challenger(state, by_bidder)
            if challenger is None:
                break
            if len(resolution.counters) >= cap:
                raise InvariantViolation(
                    f"proxy cascade on auction {auction.auction_id} exceeded {cap} counter-bids"
                )
            amount = min(
                challenger.max_amount,
                self._ceiling(state, by_bidder) + state.min_increment,
            )
            decision = validate_bid(state, challenger.bidder_id, amount, now, self._policy)
            if isinstance(decision, Rejected):
                raise InvariantViolation(
                    f"proxy counter-bid {amount} for {challenger.bidder_id} on auction "
                    f"{auction.auction_id} rejected: {decision.reason.value}"
                )
            state = apply_decision(state, challenger.bidder_id, decision, now)
            resolution.counters.append(CounterBid(challenger.bidder_id, decision))
            logger.info(
                "proxy counter-bid auction=%s bidder=%s amount=%s",
                auction.auction_id,
                challenger.bidder_id,
                amount,
            )
        resolution.auction = state
        return resolution

    def _ceiling(self, auction: Auction, by_bidder: dict[str, ProxyCommitment]) -> Decimal:
        current = auction.current_bid
        if current is None:
            raise InvariantViolation(f"auction {auction.auction_id} has a leader but no bid")
        commitment = by_bidder.get(auction.leader_id or "")
        if commitment is not None and commitment.max_amount > current:
            return commitment.max_amount
        return current

    def _next_challenger(
        self,
        auction: Auction,
        by_bidder: dict[str, ProxyCommitment],
    ) -> Optional[ProxyCommitment]:
        floor = minimum_acceptable(auction)
        ceiling = self._ceiling(auction, by_bidder)
        leader_commitment = by_bidder.get(auction.leader_id or "")
        candidates = [
            commitment
            for commitment in by_bidder.values()
            if commitment.bidder_id != auction.leader_id
            and commitment.bidder_id != auction.seller_id
            and commitment.max_amount >= floor
            and not _loses_tie(commitment, leader_commitment, ceiling)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda commitment: commitment.strength())


def _loses_tie(
    challenger: ProxyCommitment,
    leader_commitment: Optional[ProxyCommitment],
    ceiling: Decimal,
) -> bool:
    if leader_commitment is None or challenger.max_amount != ceiling:
        return False
    return (
        leader_commitment.max_amount == ceiling
        and leader_commitment.created_at <= challenger.created_at
    )
