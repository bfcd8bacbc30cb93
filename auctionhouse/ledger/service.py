"""Ledger service that persists auctions, their bid history and proxy commitments."""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence, Union

from ..auction.models import Auction, AuctionStatus, Bid, ProxyCommitment, to_amount
from ..errors import InvariantViolation
from ..storage import LedgerStorage
from ..transport.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

Cursor = Union[datetime, str, int]


def _as_time(value: Union[datetime, str]) -> datetime:
    return value if isinstance(value, datetime) else parse_timestamp(value)


@dataclass
class LedgerService:
    storage: LedgerStorage

    async def create_auction(self, fields: dict[str, Any]) -> Auction:
        start_at = _as_time(fields["start_at"])
        end_at = _as_time(fields["end_at"])
        if end_at <= start_at:
            raise ValueError("end_at must be after start_at")
        start_price = to_amount(fields["start_price"])
        min_increment = to_amount(fields["min_increment"])
        if start_price < 0:
            raise ValueError("start_price must not be negative")
        if min_increment <= 0:
            raise ValueError("min_increment must be positive")
        reserve_price = _optional_positive(fields.get("reserve_price"), "reserve_price")
        buy_now_price = _optional_positive(fields.get("buy_now_price"), "buy_now_price")
        if buy_now_price is not None and buy_now_price < start_price:
            raise ValueError("buy_now_price must not be below start_price")
        extend_minutes = int(fields.get("extend_minutes", 5))
        if extend_minutes < 0:
            raise ValueError("extend_minutes must not be negative")
        auction = Auction(
            auction_id=fields.get("auction_id") or f"auc_{uuid.uuid4().hex}",
            product_id=str(fields["product_id"]),
            store_id=str(fields["store_id"]),
            seller_id=fields.get("seller_id"),
            start_price=start_price,
            min_increment=min_increment,
            reserve_price=reserve_price,
            buy_now_price=buy_now_price,
            start_at=start_at,
            end_at=end_at,
            auto_extend=bool(fields.get("auto_extend", False)),
            extend_minutes=extend_minutes,
            status=AuctionStatus.SCHEDULED,
        )
        created = await self.storage.create_auction(auction)
        logger.info("auction created auction=%s product=%s", created.auction_id, created.product_id)
        return created

    async def snapshot(self, auction_id: str) -> Auction:
        """Fresh auction state, checked for the bid/price consistency invariant."""
        auction = await self.storage.get_auction(auction_id)
        has_price = auction.current_bid is not None
        if has_price != (auction.bid_count > 0) or has_price != (auction.leader_id is not None):
            raise InvariantViolation(
                f"auction {auction_id} inconsistent: current_bid={auction.current_bid} "
                f"leader={auction.leader_id} bids={auction.bid_count}"
            )
        return auction

    async def get_auction(self, auction_id: str) -> Auction:
        return await self.storage.get_auction(auction_id)

    async def list_auctions(
        self, statuses: Optional[Iterable[AuctionStatus]] = None
    ) -> list[Auction]:
        return await self.storage.list_auctions(statuses)

    async def commit(
        self,
        auction: Auction,
        *,
        expected_version: int,
        bids: Sequence[Bid] = (),
        commitment: Optional[ProxyCommitment] = None,
        clear_commitments: bool = False,
    ) -> Auction:
        if bids and bids[-1].amount != auction.current_bid:
            raise InvariantViolation(
                f"auction {auction.auction_id} current_bid {auction.current_bid} "
                f"does not match last bid {bids[-1].amount}"
            )
        return await self.storage.commit(
            auction,
            expected_version=expected_version,
            bids=bids,
            commitment=commitment,
            clear_commitments=clear_commitments,
        )

    async def bids_since(self, auction_id: str, cursor: Optional[Cursor] = None) -> list[Bid]:
        """Catch-up read: bids after a timestamp, or after a sequence number cursor."""
        if cursor is None:
            return await self.storage.list_bids(auction_id)
        if isinstance(cursor, int):
            return await self.storage.list_bids(auction_id, after_sequence=cursor)
        if isinstance(cursor, str) and cursor.isdigit():
            return await self.storage.list_bids(auction_id, after_sequence=int(cursor))
        return await self.storage.list_bids(auction_id, since=_as_time(cursor))

    async def all_bids(self, auction_id: str) -> list[Bid]:
        return await self.storage.list_bids(auction_id)

    async def last_bid(self, auction: Auction) -> Optional[Bid]:
        if auction.bid_count == 0:
            return None
        tail = await self.storage.list_bids(
            auction.auction_id, after_sequence=auction.bid_count - 1
        )
        if len(tail) != 1 or tail[0].amount != auction.current_bid:
            raise InvariantViolation(
                f"auction {auction.auction_id} current_bid {auction.current_bid} "
                f"does not match ledger tail {[bid.amount for bid in tail]}"
            )
        return tail[0]

    async def commitments(self, auction_id: str) -> list[ProxyCommitment]:
        return await self.storage.list_commitments(auction_id)

    async def status_summary(self) -> dict[str, int]:
        counts = Counter(auction.status.value for auction in await self.storage.list_auctions())
        return {status.value: counts.get(status.value, 0) for status in AuctionStatus}


def _optional_positive(value: Any, name: str) -> Optional[Decimal]:
    if value is None:
        return None
    amount = to_amount(value)
    if amount <= 0:
        raise ValueError(f"{name} must be positive")
    return amount
