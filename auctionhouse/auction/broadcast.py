"""Per-auction broadcast of bid and lifecycle events.

Local subscribers (websocket connections in this process) always receive
events. A relay backend can additionally forward every message to Redis
pub/sub or Google Cloud Pub/Sub for other processes. Delivery is best-effort:
a subscriber that falls behind catches up through the bids-since query.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from google.cloud import pubsub_v1
from redis import asyncio as aioredis

from ..events.payloads import AuctionEvent, channel_name
from ..transport.canonical_json import canonical_dumps

logger = logging.getLogger(__name__)


class _RelayProtocol:
    async def publish(self, channel: str, kind: str, message: bytes) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class _RedisRelay(_RelayProtocol):
    def __init__(self, options: dict[str, Any]) -> None:
        url = options.get("url")
        if not url:
            raise ValueError("redis broadcast backend requires url")
        self._redis = aioredis.from_url(url)
        self._prefix = str(options.get("channel_prefix", "")).rstrip(":")

    async def publish(self, channel: str, kind: str, message: bytes) -> None:
        target = f"{self._prefix}:{channel}" if self._prefix else channel
        await self._redis.publish(target, message)


class _PubSubRelay(_RelayProtocol):
    def __init__(self, options: dict[str, Any]) -> None:
        self._project_id = options.get("project_id")
        if not self._project_id:
            raise ValueError("pubsub backend requires project_id")
        self._topic = options.get("topic", "auction-events")
        self._publisher = pubsub_v1.PublisherClient()

    def _topic_path(self) -> str:
        if self._topic.startswith("projects/"):
            return self._topic
        return self._publisher.topic_path(self._project_id, self._topic)

    async def publish(self, channel: str, kind: str, message: bytes) -> None:
        future = self._publisher.publish(self._topic_path(), message, channel=channel, event=kind)
        await asyncio.to_thread(future.result)


@dataclass
class _FlushSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _build_relay(backend: str, options: dict[str, Any]) -> _RelayProtocol | None:
    if backend == "local":
        return None
    if backend == "redis":
        return _RedisRelay(options.get("redis", {}))
    if backend == "pubsub":
        return _PubSubRelay(options.get("pubsub", {}))
    raise ValueError(f"unknown broadcast backend {backend}")


class BroadcastPublisher:
    def __init__(
        self,
        backend: str = "local",
        options: dict[str, Any] | None = None,
        *,
        queue_size: int = 256,
    ) -> None:
        options = options or {}
        self._relay = _build_relay(backend, options)
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._pending: dict[str, deque[AuctionEvent]] = defaultdict(deque)
        self._flush_slots: dict[str, _FlushSlot] = {}

    def subscribe(self, auction_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[auction_id].add(queue)
        return queue

    def unsubscribe(self, auction_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(auction_id)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[auction_id]

    def subscriber_count(self, auction_id: str) -> int:
        return len(self._subscribers.get(auction_id, ()))

    def enqueue(self, events: Iterable[AuctionEvent]) -> None:
        """Queue events in commit order; call while the auction section is held."""
        for event in events:
            self._pending[event.auction_id].append(event)

    async def flush(self, auction_id: str) -> None:
        """Deliver queued events for one auction, oldest first."""
        slot = self._flush_slots.get(auction_id)
        if slot is None:
            slot = self._flush_slots[auction_id] = _FlushSlot()
        slot.users += 1
        try:
            async with slot.lock:
                pending = self._pending.get(auction_id)
                while pending:
                    await self._deliver(pending.popleft())
                self._pending.pop(auction_id, None)
        finally:
            slot.users -= 1
            if slot.users == 0 and self._flush_slots.get(auction_id) is slot:
                del self._flush_slots[auction_id]

    async def publish(self, auction_id: str, event: AuctionEvent) -> None:
        if event.auction_id != auction_id:
            raise ValueError(f"event for {event.auction_id} published on {auction_id}")
        self.enqueue([event])
        await self.flush(auction_id)

    async def _deliver(self, event: AuctionEvent) -> None:
        message = event.to_message()
        for queue in list(self._subscribers.get(event.auction_id, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "subscriber queue full auction=%s event=%s dropped",
                    event.auction_id,
                    event.kind.value,
                )
        if self._relay is None:
            logger.info("[local-broadcast] auction=%s event=%s delivered", event.auction_id, event.kind.value)
            return
        try:
            await self._relay.publish(
                channel_name(event.auction_id), event.kind.value, canonical_dumps(message)
            )
        except Exception:
            logger.warning(
                "broadcast relay failed auction=%s event=%s",
                event.auction_id,
                event.kind.value,
                exc_info=True,
            )
