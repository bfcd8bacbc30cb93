"""Bidding engine: validator, proxy resolver and ledger under per-auction sections.

Every mutating operation runs as one attempt inside the auction's critical
section: re-read the auction, decide, commit everything in a single ledger
transaction and queue the resulting events. Events are delivered after the
section is released. Lock timeouts and commit conflicts retry the whole
attempt; rejections are returned, never raised.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..errors import InvariantViolation, LockTimeout, TransactionConflict, TransientBidError
from ..events.payloads import AuctionEvent, auction_closed, auction_extended, bid_new
from ..events.validators import checked_events
from ..ledger.fsm import LifecycleEvent, transition
from ..ledger.service import Cursor, LedgerService
from ..ledger.settlement import SettlementListener, notify_settlement
from ..transport.timestamps import utcnow
from .broadcast import BroadcastPublisher
from .locks import AuctionLocks
from .models import (
    OPEN_STATUSES,
    Auction,
    Bid,
    BidResult,
    ProxyCommitment,
    RejectionReason,
    to_amount,
)
from .proxy import ProxyResolver
from .validator import (
    DEFAULT_POLICY,
    BiddingPolicy,
    Rejected,
    apply_decision,
    check_open_for_bids,
    minimum_acceptable,
    validate_bid,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class BiddingEngine:
    def __init__(
        self,
        ledger: LedgerService,
        locks: AuctionLocks,
        broadcast: BroadcastPublisher,
        *,
        policy: BiddingPolicy = DEFAULT_POLICY,
        resolver: Optional[ProxyResolver] = None,
        max_attempts: int = 3,
        listeners: Sequence[SettlementListener] = (),
        clock: Clock = utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._ledger = ledger
        self._locks = locks
        self._broadcast = broadcast
        self._policy = policy
        self._resolver = resolver or ProxyResolver(policy)
        self._max_attempts = max_attempts
        self._listeners = list(listeners)
        self._clock = clock

    async def place_bid(self, auction_id: str, bidder_id: str, amount: Any) -> BidResult:
        value = to_amount(amount)
        return await self._run(auction_id, lambda: self._place_bid(auction_id, bidder_id, value))

    async def set_proxy_commitment(
        self, auction_id: str, bidder_id: str, max_amount: Any
    ) -> BidResult:
        """Record or raise a bidder's standing maximum.

        When the auction is live and already has a leader the cascade runs at
        once, in the same transaction that stores the commitment.
        """
        value = to_amount(max_amount)
        return await self._run(
            auction_id, lambda: self._set_commitment(auction_id, bidder_id, value)
        )

    async def buy_now(self, auction_id: str, bidder_id: str) -> BidResult:
        result = await self._run(auction_id, lambda: self._buy_now(auction_id, bidder_id))
        if result.accepted and result.auction is not None:
            await notify_settlement(self._listeners, result.auction, result.bid)
        return result

    async def get_bids_since(self, auction_id: str, cursor: Optional[Cursor] = None) -> list[Bid]:
        return await self._ledger.bids_since(auction_id, cursor)

    async def _run(self, auction_id: str, attempt: Callable[[], Awaitable[BidResult]]) -> BidResult:
        for number in range(1, self._max_attempts + 1):
            try:
                result = await attempt()
            except (LockTimeout, TransactionConflict) as exc:
                logger.warning(
                    "attempt %s/%s on auction=%s failed: %s",
                    number,
                    self._max_attempts,
                    auction_id,
                    exc,
                )
                continue
            except InvariantViolation:
                logger.error("invariant violated on auction=%s", auction_id, exc_info=True)
                raise
            await self._broadcast.flush(auction_id)
            return result
        raise TransientBidError(auction_id, self._max_attempts)

    async def _place_bid(self, auction_id: str, bidder_id: str, amount: Decimal) -> BidResult:
        async with self._locks.hold(auction_id):
            now = self._clock()
            auction = await self._ledger.snapshot(auction_id)
            decision = validate_bid(auction, bidder_id, amount, now, self._policy)
            if isinstance(decision, Rejected):
                logger.info(
                    "bid rejected auction=%s bidder=%s amount=%s reason=%s",
                    auction_id,
                    bidder_id,
                    amount,
                    decision.reason.value,
                )
                return _rejection(decision, auction)
            updated = apply_decision(auction, bidder_id, decision, now)
            commitments = await self._ledger.commitments(auction_id)
            resolution = self._resolver.resolve(updated, commitments, now)
            bids = _bid_rows(
                auction,
                [(bidder_id, amount, False)]
                + [(counter.bidder_id, counter.decision.amount, True) for counter in resolution.counters],
                now,
            )
            events = checked_events(_bid_events(auction, resolution.auction, bids, now))
            committed = await self._ledger.commit(
                resolution.auction, expected_version=auction.version, bids=bids
            )
            self._broadcast.enqueue(events)
        _log_extension(auction, committed)
        logger.info(
            "bid accepted auction=%s bidder=%s amount=%s counters=%s leader=%s",
            auction_id,
            bidder_id,
            amount,
            len(resolution.counters),
            committed.leader_id,
        )
        return BidResult(
            accepted=True,
            bid=bids[0],
            proxy_bids=bids[1:],
            new_end_at=_new_end(auction, committed),
            auction=committed,
        )

    async def _set_commitment(
        self, auction_id: str, bidder_id: str, max_amount: Decimal
    ) -> BidResult:
        async with self._locks.hold(auction_id):
            now = self._clock()
            auction = await self._ledger.snapshot(auction_id)
            if auction.status not in OPEN_STATUSES:
                return BidResult.rejected(
                    RejectionReason.AUCTION_NOT_ACTIVE,
                    f"auction is not accepting bids (status: {auction.status.value})",
                    auction=auction,
                )
            if now >= auction.end_at:
                return BidResult.rejected(
                    RejectionReason.AUCTION_ENDED, "auction has already ended", auction=auction
                )
            if auction.seller_id is not None and bidder_id == auction.seller_id:
                return BidResult.rejected(
                    RejectionReason.SELLER_CANNOT_BID,
                    "sellers cannot bid on their own auctions",
                    auction=auction,
                )
            commitments = {
                commitment.bidder_id: commitment
                for commitment in await self._ledger.commitments(auction_id)
            }
            existing = commitments.get(bidder_id)
            if existing is not None and max_amount <= existing.max_amount:
                return BidResult.rejected(
                    RejectionReason.MAX_NOT_RAISED,
                    f"maximum must be raised above {existing.max_amount}",
                    minimum_amount=minimum_acceptable(auction),
                    auction=auction,
                )
            minimum = minimum_acceptable(auction)
            if max_amount < minimum:
                return BidResult.rejected(
                    RejectionReason.BID_TOO_LOW,
                    f"maximum must be at least {minimum}",
                    minimum_amount=minimum,
                    auction=auction,
                )
            commitment = ProxyCommitment(auction_id, bidder_id, max_amount, now)
            commitments[bidder_id] = commitment
            resolved = auction
            bids: list[Bid] = []
            if check_open_for_bids(auction, now) is None and auction.leader_id is not None:
                resolution = self._resolver.resolve(auction, commitments.values(), now)
                resolved = resolution.auction
                bids = _bid_rows(
                    auction,
                    [(counter.bidder_id, counter.decision.amount, True) for counter in resolution.counters],
                    now,
                )
            events = checked_events(_bid_events(auction, resolved, bids, now))
            committed = await self._ledger.commit(
                resolved, expected_version=auction.version, bids=bids, commitment=commitment
            )
            self._broadcast.enqueue(events)
        _log_extension(auction, committed)
        logger.info(
            "proxy commitment recorded auction=%s bidder=%s counters=%s",
            auction_id,
            bidder_id,
            len(bids),
        )
        return BidResult(
            accepted=True,
            proxy_bids=bids,
            new_end_at=_new_end(auction, committed),
            auction=committed,
        )

    async def _buy_now(self, auction_id: str, bidder_id: str) -> BidResult:
        async with self._locks.hold(auction_id):
            now = self._clock()
            auction = await self._ledger.snapshot(auction_id)
            closed = check_open_for_bids(auction, now)
            if closed is not None:
                return _rejection(closed, auction)
            if auction.seller_id is not None and bidder_id == auction.seller_id:
                return BidResult.rejected(
                    RejectionReason.SELLER_CANNOT_BID,
                    "sellers cannot bid on their own auctions",
                    auction=auction,
                )
            price = auction.buy_now_price
            if price is None or (auction.current_bid is not None and price <= auction.current_bid):
                return BidResult.rejected(
                    RejectionReason.BUY_NOW_NOT_AVAILABLE,
                    "buy now is not available for this auction",
                    auction=auction,
                )
            (bid,) = _bid_rows(auction, [(bidder_id, price, False)], now)
            updated = auction.copy()
            updated.current_bid = price
            updated.leader_id = bidder_id
            updated.bid_count = auction.bid_count + 1
            updated.reserve_met = True
            updated.status = transition(auction.status, LifecycleEvent.CLOSE)
            updated.winner_id = bidder_id
            updated.winning_bid_id = bid.bid_id
            updated.closed_at = now
            events = checked_events([bid_new(updated, bid), auction_closed(updated, bid, now)])
            committed = await self._ledger.commit(
                updated, expected_version=auction.version, bids=[bid], clear_commitments=True
            )
            self._broadcast.enqueue(events)
        logger.info("buy now auction=%s bidder=%s amount=%s", auction_id, bidder_id, price)
        return BidResult(accepted=True, bid=bid, auction=committed)


def _rejection(decision: Rejected, auction: Auction) -> BidResult:
    return BidResult.rejected(
        decision.reason,
        decision.message,
        minimum_amount=decision.minimum_amount,
        auction=auction,
    )


def _bid_rows(
    auction: Auction,
    entries: Sequence[tuple[str, Decimal, bool]],
    now: datetime,
) -> list[Bid]:
    return [
        Bid(
            bid_id=f"bid_{uuid.uuid4().hex}",
            auction_id=auction.auction_id,
            bidder_id=bidder_id,
            amount=amount,
            created_at=now,
            sequence=auction.bid_count + offset,
            is_proxy_generated=is_proxy,
        )
        for offset, (bidder_id, amount, is_proxy) in enumerate(entries, start=1)
    ]


def _new_end(before: Auction, after: Auction) -> Optional[datetime]:
    return after.end_at if after.end_at != before.end_at else None


def _bid_events(
    before: Auction, after: Auction, bids: Sequence[Bid], now: datetime
) -> list[AuctionEvent]:
    events = [bid_new(after, bid) for bid in bids]
    if after.end_at != before.end_at:
        events.append(auction_extended(after, now))
    return events


def _log_extension(before: Auction, after: Auction) -> None:
    if after.end_at != before.end_at:
        logger.info(
            "auction extended auction=%s end_at=%s count=%s",
            after.auction_id,
            after.end_at,
            after.extension_count,
        )
