"""Shared fixtures: in-memory ledger, real locks and broadcast, a settable clock."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from auctionhouse.auction.broadcast import BroadcastPublisher
from auctionhouse.auction.engine import BiddingEngine
from auctionhouse.auction.locks import AuctionLocks
from auctionhouse.auction.models import Auction, AuctionStatus
from auctionhouse.ledger.service import LedgerService
from auctionhouse.lifecycle.monitor import LifecycleMonitor
from auctionhouse.storage.in_memory import InMemoryStorage

from support import T0, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def ledger(storage) -> LedgerService:
    return LedgerService(storage)


@pytest.fixture
def locks() -> AuctionLocks:
    return AuctionLocks(timeout_ms=500)


@pytest.fixture
def broadcast() -> BroadcastPublisher:
    return BroadcastPublisher()


@pytest.fixture
def engine(ledger, locks, broadcast, clock) -> BiddingEngine:
    return BiddingEngine(ledger, locks, broadcast, clock=clock)


@pytest.fixture
def monitor(ledger, locks, broadcast, clock) -> LifecycleMonitor:
    return LifecycleMonitor(
        ledger, locks, broadcast, ending_soon=timedelta(minutes=60), clock=clock
    )


@pytest.fixture
def make_auction(ledger):
    """Create an auction and move it straight to ``status`` (RUNNING by default)."""

    async def _make(status: AuctionStatus = AuctionStatus.RUNNING, **overrides: Any) -> Auction:
        fields: dict[str, Any] = {
            "product_id": "prod_1",
            "store_id": "store_1",
            "seller_id": "seller",
            "start_price": "100",
            "min_increment": "10",
            "start_at": T0 - timedelta(hours=1),
            "end_at": T0 + timedelta(hours=2),
        }
        fields.update(overrides)
        auction = await ledger.create_auction(fields)
        if status is AuctionStatus.SCHEDULED:
            return auction
        auction.status = status
        return await ledger.commit(auction, expected_version=auction.version)

    return _make
