"""Keyed mutual exclusion: one critical section per auction."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..errors import LockTimeout


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class AuctionLocks:
    """Per-auction locks created on demand and dropped when nobody holds or waits.

    ``asyncio.Lock`` wakes waiters in arrival order, so sections for one
    auction are granted first come, first served. Different auctions never
    share a lock.
    """

    def __init__(self, timeout_ms: int) -> None:
        self._timeout = timeout_ms / 1000
        self._slots: dict[str, _Slot] = {}

    def __contains__(self, auction_id: str) -> bool:
        return auction_id in self._slots

    @asynccontextmanager
    async def hold(self, auction_id: str) -> AsyncIterator[None]:
        slot = self._slots.get(auction_id)
        if slot is None:
            slot = self._slots[auction_id] = _Slot()
        slot.users += 1
        try:
            try:
                await asyncio.wait_for(slot.lock.acquire(), self._timeout)
            except asyncio.TimeoutError as exc:
                raise LockTimeout(
                    f"timed out after {self._timeout:.3f}s waiting for auction {auction_id}"
                ) from exc
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(auction_id) is slot:
                del self._slots[auction_id]
