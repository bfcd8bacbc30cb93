"""Settlement utilities such as winner selection at closure."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol, Sequence

from ..auction.models import Auction, Bid

logger = logging.getLogger(__name__)


class SettlementListener(Protocol):
    async def on_settled(self, auction: Auction, winning_bid: Optional[Bid]) -> None: ...


class LoggingSettlementListener:
    """Default listener; order conversion and notifications live elsewhere."""

    async def on_settled(self, auction: Auction, winning_bid: Optional[Bid]) -> None:
        if winning_bid is None:
            logger.info("[settlement] auction=%s closed without a winner", auction.auction_id)
            return
        logger.info(
            "[settlement] auction=%s winner=%s amount=%s",
            auction.auction_id,
            winning_bid.bidder_id,
            winning_bid.amount,
        )


def highest_bid(bids: Iterable[Bid]) -> Optional[Bid]:
    # Equal amounts go to the bid committed first.
    return max(bids, key=lambda bid: (bid.amount, -bid.sequence), default=None)


def select_winner(auction: Auction, bids: Iterable[Bid]) -> Optional[Bid]:
    """Highest accepted bid, provided it meets the reserve; otherwise no winner."""
    best = highest_bid(bids)
    if best is None:
        return None
    if auction.reserve_price is not None and best.amount < auction.reserve_price:
        return None
    return best


async def notify_settlement(
    listeners: Sequence[SettlementListener],
    auction: Auction,
    winning_bid: Optional[Bid],
) -> None:
    for listener in listeners:
        try:
            await listener.on_settled(auction, winning_bid)
        except Exception:
            logger.error(
                "settlement listener %s failed auction=%s",
                type(listener).__name__,
                auction.auction_id,
                exc_info=True,
            )
