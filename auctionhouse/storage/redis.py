"""Redis storage backend using redis-py asyncio client.

Commits run as WATCH/MULTI/EXEC transactions on the auction key, so a writer
in another process that touches the auction first makes ours fail with
``TransactionConflict`` instead of interleaving.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import orjson
from redis import asyncio as aioredis
from redis.exceptions import WatchError

from ..auction.models import Auction, AuctionStatus, Bid, ProxyCommitment
from ..errors import AuctionNotFound, TransactionConflict


class RedisStorage:
    def __init__(self, *, url: str, prefix: str = "auctionhouse:ledger") -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")

    async def close(self) -> None:
        await self._redis.aclose()

    def _auction_key(self, auction_id: str) -> str:
        return f"{self._prefix}:auction:{auction_id}"

    def _bids_key(self, auction_id: str) -> str:
        return f"{self._prefix}:bids:{auction_id}"

    def _commitments_key(self, auction_id: str) -> str:
        return f"{self._prefix}:proxies:{auction_id}"

    def _index_key(self) -> str:
        return f"{self._prefix}:auctions"

    async def create_auction(self, auction: Auction) -> Auction:
        # One MULTI/EXEC: the row and its index entry land together. Re-adding an
        # existing id to the index set is a no-op.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(
                self._auction_key(auction.auction_id),
                orjson.dumps(auction.to_dict()),
                nx=True,
            )
            pipe.sadd(self._index_key(), auction.auction_id)
            created, _ = await pipe.execute()
        if not created:
            raise TransactionConflict(f"auction {auction.auction_id} already exists")
        return auction.copy()

    async def get_auction(self, auction_id: str) -> Auction:
        raw = await self._redis.get(self._auction_key(auction_id))
        if raw is None:
            raise AuctionNotFound(f"auction {auction_id} not found")
        return Auction.from_dict(orjson.loads(raw))

    async def list_auctions(
        self, statuses: Optional[Iterable[AuctionStatus]] = None
    ) -> list[Auction]:
        wanted = set(statuses) if statuses is not None else None
        members = await self._redis.smembers(self._index_key())
        if not members:
            return []
        ids = sorted(
            member.decode() if isinstance(member, bytes) else member for member in members
        )
        values = await self._redis.mget([self._auction_key(auction_id) for auction_id in ids])
        auctions = [Auction.from_dict(orjson.loads(value)) for value in values if value]
        return [auction for auction in auctions if wanted is None or auction.status in wanted]

    async def commit(
        self,
        auction: Auction,
        *,
        expected_version: int,
        bids: Sequence[Bid] = (),
        commitment: Optional[ProxyCommitment] = None,
        clear_commitments: bool = False,
    ) -> Auction:
        key = self._auction_key(auction.auction_id)
        updated = auction.copy()
        updated.version = expected_version + 1
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise AuctionNotFound(f"auction {auction.auction_id} not found")
                stored_version = int(orjson.loads(raw).get("version", 0))
                if stored_version != expected_version:
                    raise TransactionConflict(
                        f"auction {auction.auction_id} at version {stored_version}, "
                        f"expected {expected_version}"
                    )
                pipe.multi()
                if bids:
                    pipe.rpush(
                        self._bids_key(auction.auction_id),
                        *[orjson.dumps(bid.to_dict()) for bid in bids],
                    )
                if clear_commitments:
                    pipe.delete(self._commitments_key(auction.auction_id))
                elif commitment is not None:
                    pipe.hset(
                        self._commitments_key(auction.auction_id),
                        commitment.bidder_id,
                        orjson.dumps(commitment.to_dict()),
                    )
                pipe.set(key, orjson.dumps(updated.to_dict()))
                await pipe.execute()
        except WatchError as exc:
            raise TransactionConflict(f"auction {auction.auction_id} changed during commit") from exc
        return updated

    async def list_bids(
        self,
        auction_id: str,
        *,
        since: Optional[datetime] = None,
        after_sequence: Optional[int] = None,
    ) -> list[Bid]:
        if not await self._redis.exists(self._auction_key(auction_id)):
            raise AuctionNotFound(f"auction {auction_id} not found")
        start = after_sequence if after_sequence is not None and after_sequence > 0 else 0
        raw_bids = await self._redis.lrange(self._bids_key(auction_id), start, -1)
        bids = [Bid.from_dict(orjson.loads(raw)) for raw in raw_bids]
        selected = [
            bid
            for bid in bids
            if (since is None or bid.created_at > since)
            and (after_sequence is None or bid.sequence > after_sequence)
        ]
        return sorted(selected, key=lambda bid: (bid.created_at, bid.sequence))

    async def list_commitments(self, auction_id: str) -> list[ProxyCommitment]:
        values = await self._redis.hvals(self._commitments_key(auction_id))
        commitments = [ProxyCommitment.from_dict(orjson.loads(value)) for value in values]
        return sorted(commitments, key=lambda commitment: commitment.created_at)
