"""Storage backend factory."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from ..auction.models import Auction, AuctionStatus, Bid, ProxyCommitment
from ..config import ServerConfig
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class LedgerStorage(Protocol):
    """Transactional contract for auctions, their bid history and commitments.

    ``commit`` is all-or-nothing: it checks ``expected_version`` against the
    stored auction, appends ``bids``, upserts ``commitment`` (one per auction
    and bidder), replaces the auction row with ``auction`` at
    ``expected_version + 1`` and optionally clears the auction's commitments.
    A version mismatch raises ``TransactionConflict`` and leaves everything
    untouched. Bid rows are never updated or deleted.
    """

    async def create_auction(self, auction: Auction) -> Auction: ...

    async def get_auction(self, auction_id: str) -> Auction: ...

    async def list_auctions(
        self, statuses: Optional[Iterable[AuctionStatus]] = None
    ) -> list[Auction]: ...

    async def commit(
        self,
        auction: Auction,
        *,
        expected_version: int,
        bids: Sequence[Bid] = (),
        commitment: Optional[ProxyCommitment] = None,
        clear_commitments: bool = False,
    ) -> Auction: ...

    async def list_bids(
        self,
        auction_id: str,
        *,
        since: Optional[datetime] = None,
        after_sequence: Optional[int] = None,
    ) -> list[Bid]: ...

    async def list_commitments(self, auction_id: str) -> list[ProxyCommitment]: ...


def build_storage(config: ServerConfig) -> LedgerStorage:
    backend = config.ledger.backend
    options = dict(config.ledger.options)
    if backend == "in_memory":
        return InMemoryStorage()
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
