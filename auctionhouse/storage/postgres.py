"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import asyncpg
import orjson

from ..auction.models import Auction, AuctionStatus, Bid, ProxyCommitment
from ..errors import AuctionNotFound, TransactionConflict

_SCHEMA = """
CREATE TABLE IF NOT EXISTS auctions (
    auction_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    version INTEGER NOT NULL,
    data JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_auctions_status ON auctions (status);
CREATE TABLE IF NOT EXISTS bids (
    auction_id TEXT NOT NULL REFERENCES auctions (auction_id),
    sequence INTEGER NOT NULL,
    bid_id TEXT NOT NULL UNIQUE,
    created_at TIMESTAMPTZ NOT NULL,
    data JSONB NOT NULL,
    PRIMARY KEY (auction_id, sequence)
);
CREATE INDEX IF NOT EXISTS idx_bids_created_at ON bids (auction_id, created_at);
CREATE TABLE IF NOT EXISTS proxy_commitments (
    auction_id TEXT NOT NULL REFERENCES auctions (auction_id),
    bidder_id TEXT NOT NULL,
    data JSONB NOT NULL,
    PRIMARY KEY (auction_id, bidder_id)
);
"""

# Errors a concurrent writer can cause; the engine retries these.
_CONFLICT_ERRORS = (
    asyncpg.UniqueViolationError,
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
)


class PostgresStorage:
    def __init__(self, *, dsn: str | None = None, **connect_kwargs: Any) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_auction(self, auction: Auction) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """INSERT INTO auctions(auction_id, status, version, data) VALUES($1, $2, $3, $4)""",
                    auction.auction_id,
                    auction.status.value,
                    auction.version,
                    self._encode(auction.to_dict()),
                )
            except asyncpg.UniqueViolationError as exc:
                raise TransactionConflict(f"auction {auction.auction_id} already exists") from exc
        return auction.copy()

    async def get_auction(self, auction_id: str) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT data FROM auctions WHERE auction_id=$1""",
                auction_id,
            )
        if not row:
            raise AuctionNotFound(f"auction {auction_id} not found")
        return Auction.from_dict(self._decode(row["data"]))

    async def list_auctions(
        self, statuses: Optional[Iterable[AuctionStatus]] = None
    ) -> list[Auction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            if statuses is None:
                rows = await conn.fetch("SELECT data FROM auctions ORDER BY auction_id")
            else:
                rows = await conn.fetch(
                    """SELECT data FROM auctions WHERE status = ANY($1::text[]) ORDER BY auction_id""",
                    [status.value for status in statuses],
                )
        return [Auction.from_dict(self._decode(row["data"])) for row in rows]

    async def commit(
        self,
        auction: Auction,
        *,
        expected_version: int,
        bids: Sequence[Bid] = (),
        commitment: Optional[ProxyCommitment] = None,
        clear_commitments: bool = False,
    ) -> Auction:
        updated = auction.copy()
        updated.version = expected_version + 1
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """SELECT version FROM auctions WHERE auction_id=$1 FOR UPDATE""",
                        auction.auction_id,
                    )
                    if not row:
                        raise AuctionNotFound(f"auction {auction.auction_id} not found")
                    if row["version"] != expected_version:
                        raise TransactionConflict(
                            f"auction {auction.auction_id} at version {row['version']}, "
                            f"expected {expected_version}"
                        )
                    if bids:
                        await conn.executemany(
                            """INSERT INTO bids(auction_id, sequence, bid_id, created_at, data)
                               VALUES($1, $2, $3, $4, $5)""",
                            [
                                (
                                    bid.auction_id,
                                    bid.sequence,
                                    bid.bid_id,
                                    bid.created_at,
                                    self._encode(bid.to_dict()),
                                )
                                for bid in bids
                            ],
                        )
                    if clear_commitments:
                        await conn.execute(
                            """DELETE FROM proxy_commitments WHERE auction_id=$1""",
                            auction.auction_id,
                        )
                    elif commitment is not None:
                        await conn.execute(
                            """INSERT INTO proxy_commitments(auction_id, bidder_id, data)
                               VALUES($1, $2, $3)
                               ON CONFLICT (auction_id, bidder_id) DO UPDATE SET data=EXCLUDED.data""",
                            commitment.auction_id,
                            commitment.bidder_id,
                            self._encode(commitment.to_dict()),
                        )
                    await conn.execute(
                        """UPDATE auctions SET status=$2, version=$3, data=$4 WHERE auction_id=$1""",
                        updated.auction_id,
                        updated.status.value,
                        updated.version,
                        self._encode(updated.to_dict()),
                    )
            except _CONFLICT_ERRORS as exc:
                raise TransactionConflict(str(exc)) from exc
        return updated

    async def list_bids(
        self,
        auction_id: str,
        *,
        since: Optional[datetime] = None,
        after_sequence: Optional[int] = None,
    ) -> list[Bid]:
        clauses = ["auction_id=$1"]
        params: list[Any] = [auction_id]
        if since is not None:
            params.append(since)
            clauses.append(f"created_at > ${len(params)}")
        if after_sequence is not None:
            params.append(after_sequence)
            clauses.append(f"sequence > ${len(params)}")
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            exists = await conn.fetchval(
                """SELECT 1 FROM auctions WHERE auction_id=$1""",
                auction_id,
            )
            if not exists:
                raise AuctionNotFound(f"auction {auction_id} not found")
            rows = await conn.fetch(
                f"SELECT data FROM bids WHERE {' AND '.join(clauses)} ORDER BY created_at, sequence",
                *params,
            )
        return [Bid.from_dict(self._decode(row["data"])) for row in rows]

    async def list_commitments(self, auction_id: str) -> list[ProxyCommitment]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT data FROM proxy_commitments WHERE auction_id=$1""",
                auction_id,
            )
        commitments = [ProxyCommitment.from_dict(self._decode(row["data"])) for row in rows]
        return sorted(commitments, key=lambda commitment: commitment.created_at)
