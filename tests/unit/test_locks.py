"""Unit tests for per-auction mutual exclusion."""

from __future__ import annotations

import asyncio

import pytest

from auctionhouse.auction.locks import AuctionLocks
from auctionhouse.errors import LockTimeout


class TestAuctionLocks:
    """Test suite for per-auction critical sections."""

    @pytest.mark.asyncio
    async def test_sections_granted_in_arrival_order(self):
        """Waiters acquire in arrival order."""
        locks = AuctionLocks(timeout_ms=1000)
        order: list[int] = []

        async def section(index: int) -> None:
            async with locks.hold("auc_1"):
                order.append(index)
                await asyncio.sleep(0)

        await asyncio.gather(*(section(index) for index in range(5)))

        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_sections_never_overlap(self):
        """At most one section runs per auction."""
        locks = AuctionLocks(timeout_ms=1000)
        inside = 0
        peak = 0

        async def section() -> None:
            nonlocal inside, peak
            async with locks.hold("auc_1"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0)
                inside -= 1

        await asyncio.gather(*(section() for _ in range(10)))

        assert peak == 1

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        """Waiting past the timeout raises LockTimeout."""
        locks = AuctionLocks(timeout_ms=10)
        async with locks.hold("auc_1"):
            with pytest.raises(LockTimeout):
                async with locks.hold("auc_1"):
                    pass

    @pytest.mark.asyncio
    async def test_different_auctions_independent(self):
        """Different auctions never share a lock."""
        locks = AuctionLocks(timeout_ms=10)
        async with locks.hold("auc_1"):
            async with locks.hold("auc_2"):
                assert "auc_2" in locks

    @pytest.mark.asyncio
    async def test_idle_slots_released(self):
        """Slots are dropped once released."""
        locks = AuctionLocks(timeout_ms=10)
        async with locks.hold("auc_1"):
            assert "auc_1" in locks
        assert "auc_1" not in locks

    @pytest.mark.asyncio
    async def test_slot_released_after_timeout(self):
        """A timed-out waiter does not leak its slot."""
        locks = AuctionLocks(timeout_ms=10)
        async with locks.hold("auc_1"):
            with pytest.raises(LockTimeout):
                async with locks.hold("auc_1"):
                    pass
        assert "auc_1" not in locks
