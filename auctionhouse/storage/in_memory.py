"""In-memory storage backend for auctions, bids and proxy commitments.

No method awaits between reading and writing its dictionaries, so each call
is atomic with respect to other coroutines on the same event loop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..auction.models import Auction, AuctionStatus, Bid, ProxyCommitment
from ..errors import AuctionNotFound, TransactionConflict


class InMemoryStorage:
    def __init__(self) -> None:
        self._auctions: dict[str, Auction] = {}
        self._bids: dict[str, list[Bid]] = {}
        self._commitments: dict[str, dict[str, ProxyCommitment]] = {}

    async def create_auction(self, auction: Auction) -> Auction:
        if auction.auction_id in self._auctions:
            raise TransactionConflict(f"auction {auction.auction_id} already exists")
        self._auctions[auction.auction_id] = auction.copy()
        self._bids[auction.auction_id] = []
        self._commitments[auction.auction_id] = {}
        return auction.copy()

    async def get_auction(self, auction_id: str) -> Auction:
        try:
            return self._auctions[auction_id].copy()
        except KeyError as exc:
            raise AuctionNotFound(f"auction {auction_id} not found") from exc

    async def list_auctions(
        self, statuses: Optional[Iterable[AuctionStatus]] = None
    ) -> list[Auction]:
        wanted = set(statuses) if statuses is not None else None
        return [
            auction.copy()
            for auction in self._auctions.values()
            if wanted is None or auction.status in wanted
        ]

    async def commit(
        self,
        auction: Auction,
        *,
        expected_version: int,
        bids: Sequence[Bid] = (),
        commitment: Optional[ProxyCommitment] = None,
        clear_commitments: bool = False,
    ) -> Auction:
        stored = self._auctions.get(auction.auction_id)
        if stored is None:
            raise AuctionNotFound(f"auction {auction.auction_id} not found")
        if stored.version != expected_version:
            raise TransactionConflict(
                f"auction {auction.auction_id} at version {stored.version}, expected {expected_version}"
            )
        history = self._bids[auction.auction_id]
        next_sequence = history[-1].sequence + 1 if history else 1
        for offset, bid in enumerate(bids):
            if bid.sequence != next_sequence + offset:
                raise TransactionConflict(
                    f"bid {bid.bid_id} out of sequence for auction {auction.auction_id}"
                )
        updated = auction.copy()
        updated.version = expected_version + 1
        history.extend(bids)
        self._auctions[auction.auction_id] = updated
        if clear_commitments:
            self._commitments[auction.auction_id] = {}
        elif commitment is not None:
            self._commitments[auction.auction_id][commitment.bidder_id] = commitment
        return updated.copy()

    async def list_bids(
        self,
        auction_id: str,
        *,
        since: Optional[datetime] = None,
        after_sequence: Optional[int] = None,
    ) -> list[Bid]:
        if auction_id not in self._bids:
            raise AuctionNotFound(f"auction {auction_id} not found")
        selected = [
            bid
            for bid in self._bids[auction_id]
            if (since is None or bid.created_at > since)
            and (after_sequence is None or bid.sequence > after_sequence)
        ]
        return sorted(selected, key=lambda bid: (bid.created_at, bid.sequence))

    async def list_commitments(self, auction_id: str) -> list[ProxyCommitment]:
        if auction_id not in self._commitments:
            raise AuctionNotFound(f"auction {auction_id} not found")
        return sorted(
            self._commitments[auction_id].values(),
            key=lambda commitment: commitment.created_at,
        )
