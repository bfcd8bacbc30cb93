"""Time-driven auction status transitions.

The monitor owns no scheduler. An external trigger calls :meth:`sweep`
periodically; each auction whose wall-clock status differs from its stored
one is re-checked and moved inside the same per-auction section the bidding
engine uses, so a sweep never interleaves with a bid. Re-running a sweep is a
no-op for auctions already in their target status.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from ..auction.broadcast import BroadcastPublisher
from ..auction.locks import AuctionLocks
from ..auction.models import OPEN_STATUSES, Auction, AuctionStatus, Bid
from ..errors import InvariantViolation, LockTimeout, TransactionConflict
from ..events.payloads import AuctionEvent, EventKind, auction_closed, status_changed
from ..events.validators import checked_events
from ..ledger.fsm import LifecycleEvent, derive_status, event_towards, transition
from ..ledger.service import LedgerService
from ..ledger.settlement import SettlementListener, notify_settlement, select_winner
from ..transport.timestamps import utcnow

logger = logging.getLogger(__name__)


class LifecycleMonitor:
    def __init__(
        self,
        ledger: LedgerService,
        locks: AuctionLocks,
        broadcast: BroadcastPublisher,
        *,
        ending_soon: timedelta = timedelta(minutes=60),
        listeners: Sequence[SettlementListener] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._locks = locks
        self._broadcast = broadcast
        self._ending_soon = ending_soon
        self._listeners = list(listeners)
        self._clock = clock

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """Apply due transitions and return the ids of auctions that moved.

        An auction that is busy or conflicts is skipped and picked up by the
        next sweep.
        """
        now = now or self._clock()
        transitioned: list[str] = []
        for auction in await self._ledger.list_auctions(OPEN_STATUSES):
            if derive_status(auction, now, self._ending_soon) is auction.status:
                continue
            try:
                moved = await self.refresh(auction.auction_id, now)
            except (LockTimeout, TransactionConflict) as exc:
                logger.warning("sweep skipped auction=%s: %s", auction.auction_id, exc)
                continue
            except InvariantViolation:
                logger.error("sweep failed auction=%s", auction.auction_id, exc_info=True)
                continue
            if moved:
                transitioned.append(auction.auction_id)
        if transitioned:
            logger.info("sweep transitioned %s auctions", len(transitioned))
        return transitioned

    async def refresh(self, auction_id: str, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        winning: Optional[Bid] = None
        async with self._locks.hold(auction_id):
            auction = await self._ledger.snapshot(auction_id)
            target = derive_status(auction, now, self._ending_soon)
            if target is auction.status:
                return False
            updated = auction.copy()
            updated.status = transition(auction.status, event_towards(auction.status, target))
            closing = updated.status is AuctionStatus.CLOSED
            if closing:
                winning = await self._winning_bid(auction)
                updated.winner_id = winning.bidder_id if winning else None
                updated.winning_bid_id = winning.bid_id if winning else None
                updated.closed_at = now
            events = checked_events(_transition_events(auction.status, updated, winning, now))
            committed = await self._ledger.commit(
                updated, expected_version=auction.version, clear_commitments=closing
            )
            self._broadcast.enqueue(events)
        logger.info(
            "auction transition auction=%s %s -> %s",
            auction_id,
            auction.status.value,
            committed.status.value,
        )
        await self._broadcast.flush(auction_id)
        if closing:
            await notify_settlement(self._listeners, committed, winning)
        return True

    async def archive(self, auction_id: str) -> Auction:
        async with self._locks.hold(auction_id):
            auction = await self._ledger.snapshot(auction_id)
            updated = auction.copy()
            updated.status = transition(auction.status, LifecycleEvent.ARCHIVE)
            committed = await self._ledger.commit(updated, expected_version=auction.version)
        logger.info("auction archived auction=%s", auction_id)
        return committed

    async def _winning_bid(self, auction: Auction) -> Optional[Bid]:
        # Confirms current_bid still matches the ledger tail before settling.
        await self._ledger.last_bid(auction)
        return select_winner(auction, await self._ledger.all_bids(auction.auction_id))


def _transition_events(
    previous: AuctionStatus,
    auction: Auction,
    winning: Optional[Bid],
    now: datetime,
) -> list[AuctionEvent]:
    if auction.status is AuctionStatus.CLOSED:
        return [auction_closed(auction, winning, now)]
    if auction.status is AuctionStatus.ENDING_SOON:
        return [status_changed(auction, EventKind.AUCTION_ENDING_SOON, now)]
    if auction.status is AuctionStatus.RUNNING and previous is AuctionStatus.SCHEDULED:
        return [status_changed(auction, EventKind.AUCTION_STARTED, now)]
    return []
