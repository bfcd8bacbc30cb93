"""Unit tests for the HTTP and websocket surface."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auctionhouse.config import get_server_config
from auctionhouse.errors import (
    InvariantViolation,
    LockTimeout,
    TransactionConflict,
    TransientBidError,
)
from auctionhouse.main import _stop_sender, app


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@pytest.fixture
def client(monkeypatch):
    """TestClient over the default in-memory configuration, without a cron token."""
    monkeypatch.delenv("AUCTIONHOUSE_CRON_TOKEN", raising=False)
    monkeypatch.delenv("AUCTIONHOUSE_CONFIG_PATH", raising=False)
    get_server_config.cache_clear()
    with TestClient(app) as test_client:
        yield test_client
    get_server_config.cache_clear()


def create_auction(client: TestClient, **overrides: Any) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    body = {
        "product_id": "prod_1",
        "store_id": "store_1",
        "seller_id": "seller",
        "start_price": "100",
        "min_increment": "10",
        "start_at": _iso(now - timedelta(hours=1)),
        "end_at": _iso(now + timedelta(hours=3)),
    }
    body.update(overrides)
    response = client.post("/auctions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def open_auction(client: TestClient, **overrides: Any) -> str:
    auction_id = create_auction(client, **overrides)["auction_id"]
    response = client.post("/lifecycle/sweep")
    assert auction_id in response.json()["transitioned"]
    return auction_id


class TestAuctions:
    """Test suite for auction creation and lookup."""

    def test_create_hides_reserve(self, client):
        """Created auctions report has_reserve but never the reserve amount."""
        created = create_auction(client, reserve_price="500")
        assert created["status"] == "SCHEDULED"
        assert created["has_reserve"] is True
        assert "reserve_price" not in created

        fetched = client.get(f"/auctions/{created['auction_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["auction_id"] == created["auction_id"]

    def test_create_rejects_bad_body(self, client):
        """A body missing required fields fails schema validation with 422."""
        response = client.post("/auctions", json={"product_id": "prod_1"})
        assert response.status_code == 422

    def test_create_rejects_inverted_window(self, client):
        """An end before the start is refused with 422."""
        now = datetime.now(timezone.utc)
        response = client.post(
            "/auctions",
            json={
                "product_id": "prod_1",
                "store_id": "store_1",
                "start_price": "100",
                "min_increment": "10",
                "start_at": _iso(now),
                "end_at": _iso(now - timedelta(hours=1)),
            },
        )
        assert response.status_code == 422

    def test_unknown_auction(self, client):
        """Lookups and bids on an unknown auction return 404."""
        assert client.get("/auctions/auc_missing").status_code == 404
        response = client.post("/auctions/auc_missing/bids", json={"bidder_id": "b", "amount": "100"})
        assert response.status_code == 404


class TestBidding:
    """Test suite for bid, proxy and error responses."""

    def test_accepted_bid(self, client):
        """An accepted bid returns 201 with the committed bid and auction."""
        auction_id = open_auction(client)

        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})

        assert response.status_code == 201
        body = response.json()
        assert body["accepted"] is True
        assert body["bid"]["amount"] == "100"
        assert body["bid"]["sequence"] == 1
        assert body["auction"]["current_bid"] == "100"
        assert body["auction"]["leader_id"] == "b"

    def test_low_bid_reports_minimum(self, client):
        """A low bid is a 409 rejection carrying the minimum acceptable amount."""
        auction_id = open_auction(client)
        client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})

        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "c", "amount": "105"})

        assert response.status_code == 409
        body = response.json()
        assert body["accepted"] is False
        assert body["reason"] == "BidTooLow"
        assert body["minimum_amount"] == "110"

    def test_seller_refused(self, client):
        """The seller cannot bid on their own auction."""
        auction_id = open_auction(client)
        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "seller", "amount": "100"})
        assert response.status_code == 409
        assert response.json()["reason"] == "SellerCannotBid"

    def test_scheduled_auction_refuses_bids(self, client):
        """Bids before the sweep starts the auction are not accepted."""
        auction_id = create_auction(client)["auction_id"]
        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})
        assert response.status_code == 409
        assert response.json()["reason"] == "AuctionNotActive"

    @pytest.mark.parametrize("amount", ["-5", 0, "abc", None])
    def test_malformed_amount(self, client, amount):
        """Non-positive or non-numeric amounts fail schema validation."""
        auction_id = open_auction(client)
        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": amount})
        assert response.status_code == 422

    def test_proxy_counters_manual_bid(self, client):
        """A standing commitment answers a manual bid in the same response."""
        auction_id = open_auction(client)
        commitment = client.put(f"/auctions/{auction_id}/proxy", json={"bidder_id": "a", "max_amount": "300"})
        assert commitment.status_code == 200
        assert commitment.json()["accepted"] is True

        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})

        body = response.json()
        assert response.status_code == 201
        assert [bid["bidder_id"] for bid in body["proxy_bids"]] == ["a"]
        assert body["proxy_bids"][0]["amount"] == "110"
        assert body["proxy_bids"][0]["is_proxy_generated"] is True
        assert body["auction"]["leader_id"] == "a"

    def test_transient_failure_is_retryable(self, client, monkeypatch):
        """Exhausted retries map to 503 with Retry-After."""
        auction_id = open_auction(client)
        monkeypatch.setattr(
            app.state.engine,
            "place_bid",
            AsyncMock(side_effect=TransientBidError(auction_id, 3)),
        )

        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["transient"] is True

    def test_invariant_violation_is_server_error(self, client, monkeypatch):
        """An inconsistent ledger surfaces as 500."""
        auction_id = open_auction(client)
        monkeypatch.setattr(
            app.state.engine,
            "place_bid",
            AsyncMock(side_effect=InvariantViolation("drift")),
        )

        response = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})

        assert response.status_code == 500


class TestBidsSince:
    """Test suite for the catch-up query."""

    def test_cursor_and_timestamp(self, client):
        """Bids can be read after a sequence cursor or after a timestamp."""
        auction_id = open_auction(client)
        client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})
        client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "c", "amount": "120"})

        after_first = client.get(f"/auctions/{auction_id}/bids", params={"cursor": 1}).json()
        assert [bid["amount"] for bid in after_first["bids"]] == ["120"]
        assert after_first["cursor"] == 2

        everything = client.get(
            f"/auctions/{auction_id}/bids", params={"since": "2000-01-01T00:00:00Z"}
        ).json()
        assert [bid["sequence"] for bid in everything["bids"]] == [1, 2]

        caught_up = client.get(f"/auctions/{auction_id}/bids", params={"cursor": 2}).json()
        assert caught_up["bids"] == []
        assert caught_up["cursor"] == 2

    def test_bad_queries(self, client):
        """Both filters at once, or an unparseable timestamp, return 422."""
        auction_id = open_auction(client)
        both = client.get(
            f"/auctions/{auction_id}/bids",
            params={"cursor": 0, "since": "2000-01-01T00:00:00Z"},
        )
        assert both.status_code == 422
        assert client.get(f"/auctions/{auction_id}/bids", params={"since": "yesterday"}).status_code == 422


class TestBuyNowAndArchive:
    """Test suite for buy-now closure and manual archiving."""

    def test_buy_now_closes_then_archive(self, client):
        """Buy-now closes the auction, after which it can be archived."""
        auction_id = open_auction(client, buy_now_price="500")

        response = client.post(f"/auctions/{auction_id}/buy-now", json={"bidder_id": "x"})

        assert response.status_code == 200
        auction = response.json()["auction"]
        assert auction["status"] == "CLOSED"
        assert auction["winner_id"] == "x"
        assert auction["current_bid"] == "500"

        late = client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "y", "amount": "600"})
        assert late.status_code == 409

        archived = client.post(f"/auctions/{auction_id}/archive")
        assert archived.status_code == 200
        assert archived.json()["status"] == "ARCHIVED"

    def test_buy_now_unavailable(self, client):
        """Auctions without a buy-now price refuse buy-now with 409."""
        auction_id = open_auction(client)
        response = client.post(f"/auctions/{auction_id}/buy-now", json={"bidder_id": "x"})
        assert response.status_code == 409
        assert response.json()["reason"] == "BuyNowNotAvailable"

    def test_archive_open_auction_conflicts(self, client):
        """Only closed auctions can be archived."""
        auction_id = open_auction(client)
        assert client.post(f"/auctions/{auction_id}/archive").status_code == 409

    @pytest.mark.parametrize(
        "error",
        [LockTimeout("auction busy"), TransactionConflict("auction changed")],
    )
    def test_busy_archive_is_retryable(self, client, monkeypatch, error):
        """A busy or concurrently changed auction maps to 503 with Retry-After."""
        auction_id = open_auction(client)
        monkeypatch.setattr(app.state.monitor, "archive", AsyncMock(side_effect=error))

        response = client.post(f"/auctions/{auction_id}/archive")

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["transient"] is True


class TestSweepAuth:
    """Test suite for the cron-protected sweep endpoint."""

    def test_token_required_when_configured(self, monkeypatch):
        """With a cron token set, only the matching bearer header may sweep."""
        monkeypatch.setenv("AUCTIONHOUSE_CRON_TOKEN", "s3cret")
        monkeypatch.delenv("AUCTIONHOUSE_CONFIG_PATH", raising=False)
        get_server_config.cache_clear()
        try:
            with TestClient(app) as client:
                assert client.post("/lifecycle/sweep").status_code == 401
                wrong = client.post("/lifecycle/sweep", headers={"Authorization": "Bearer nope"})
                assert wrong.status_code == 401
                ok = client.post("/lifecycle/sweep", headers={"Authorization": "Bearer s3cret"})
                assert ok.status_code == 200
                assert ok.json()["count"] == 0
                assert client.get("/admin/config").json()["lifecycle"]["cron_protected"] is True
        finally:
            get_server_config.cache_clear()


class TestAdmin:
    """Test suite for the admin routers."""

    def test_health(self, client):
        """Health reports the configured backends."""
        body = client.get("/admin/health").json()
        assert body["status"] == "healthy"
        assert body["storage_backend"] == "in_memory"
        assert body["broadcast_backend"] == "local"

    def test_stats(self, client):
        """Stats count auctions, bids and statuses."""
        auction_id = open_auction(client)
        client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})
        create_auction(client)

        body = client.get("/admin/stats").json()

        assert body["total_auctions"] == 2
        assert body["total_bids"] == 1
        assert body["status_summary"]["RUNNING"] == 1
        assert body["status_summary"]["SCHEDULED"] == 1
        assert body["settled_auctions"] == 0


class TestEventStream:
    """Test suite for the per-auction websocket channel."""

    def test_unknown_auction_closes(self, client):
        """Subscribing to an unknown auction closes with code 4404."""
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/auctions/auc_missing/events") as websocket:
                websocket.receive_text()
        assert excinfo.value.code == 4404

    def test_bid_events_streamed(self, client):
        """A committed bid reaches a connected subscriber as bid:new."""
        auction_id = open_auction(client)
        with client.websocket_connect(f"/auctions/{auction_id}/events") as websocket:
            client.post(f"/auctions/{auction_id}/bids", json={"bidder_id": "b", "amount": "100"})
            message = websocket.receive_json()
        assert message["event"] == "bid:new"
        assert message["channel"] == f"auction-{auction_id}"
        assert message["data"]["amount"] == "100"


class TestStopSender:
    """Test suite for shutting down a subscriber's forwarding task."""

    @pytest.mark.asyncio
    async def test_failed_send_is_collected(self, caplog):
        """A send failure inside the task is retrieved and logged, not left dangling."""

        async def failing_send() -> None:
            raise RuntimeError("socket closed")

        task = asyncio.create_task(failing_send())
        await asyncio.sleep(0)

        await _stop_sender(task, "auc_1")

        assert task.done()
        assert "event stream send failed" in caplog.text

    @pytest.mark.asyncio
    async def test_pending_sender_cancelled(self):
        """A sender still waiting for events is cancelled and awaited."""
        task = asyncio.create_task(asyncio.Event().wait())

        await _stop_sender(task, "auc_1")

        assert task.cancelled()
