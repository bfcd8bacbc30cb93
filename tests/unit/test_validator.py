"""Unit tests for the pure bid validation rules."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any

from auctionhouse.auction.models import Auction, AuctionStatus, RejectionReason
from auctionhouse.auction.validator import (
    Accepted,
    BiddingPolicy,
    Rejected,
    apply_decision,
    minimum_acceptable,
    validate_bid,
)

from support import T0


def running(**overrides: Any) -> Auction:
    fields: dict[str, Any] = {
        "auction_id": "auc_1",
        "product_id": "prod_1",
        "store_id": "store_1",
        "seller_id": "seller",
        "start_price": Decimal("100"),
        "min_increment": Decimal("10"),
        "start_at": T0 - timedelta(hours=1),
        "end_at": T0 + timedelta(hours=1),
        "status": AuctionStatus.RUNNING,
    }
    fields.update(overrides)
    return Auction(**fields)


class TestMinimumAcceptable:
    """Test suite for the next acceptable amount."""

    def test_first_bid_uses_start_price(self):
        """The first bid may equal the start price."""
        assert minimum_acceptable(running()) == Decimal("100")

    def test_first_bid_never_below_increment(self):
        """A zero start price still needs one increment."""
        auction = running(start_price=Decimal("0"), min_increment=Decimal("5"))
        assert minimum_acceptable(auction) == Decimal("5")

    def test_later_bids_need_one_increment(self):
        """Later bids need one increment over current."""
        auction = running(current_bid=Decimal("150"), leader_id="a", bid_count=1)
        assert minimum_acceptable(auction) == Decimal("160")


class TestValidateBid:
    """Test suite for bid acceptance rules."""

    def test_scheduled_auction_not_active(self):
        """Scheduled auctions refuse bids."""
        decision = validate_bid(running(status=AuctionStatus.SCHEDULED), "a", Decimal("100"), T0)
        assert isinstance(decision, Rejected)
        assert decision.reason is RejectionReason.AUCTION_NOT_ACTIVE

    def test_closed_auction_not_active(self):
        """Closed auctions refuse bids."""
        decision = validate_bid(running(status=AuctionStatus.CLOSED), "a", Decimal("100"), T0)
        assert decision.reason is RejectionReason.AUCTION_NOT_ACTIVE

    def test_deadline_passed_while_still_running(self):
        """The clock wins even when the sweep has not closed the auction yet."""
        auction = running(end_at=T0)
        decision = validate_bid(auction, "a", Decimal("100"), T0)
        assert isinstance(decision, Rejected)
        assert decision.reason is RejectionReason.AUCTION_ENDED

    def test_ending_soon_before_deadline_accepts(self):
        """ENDING_SOON still accepts bids before end_at."""
        auction = running(status=AuctionStatus.ENDING_SOON, end_at=T0 + timedelta(minutes=10))
        assert isinstance(validate_bid(auction, "a", Decimal("100"), T0), Accepted)

    def test_seller_cannot_bid(self):
        """The seller is refused."""
        decision = validate_bid(running(), "seller", Decimal("500"), T0)
        assert decision.reason is RejectionReason.SELLER_CANNOT_BID

    def test_too_low_reports_minimum(self):
        """A low bid reports the minimum in reason and message."""
        auction = running(current_bid=Decimal("150"), leader_id="a", bid_count=1)
        decision = validate_bid(auction, "b", Decimal("155"), T0)
        assert isinstance(decision, Rejected)
        assert decision.reason is RejectionReason.BID_TOO_LOW
        assert decision.minimum_amount == Decimal("160")
        assert "160" in decision.message

    def test_non_positive_amount_is_too_low(self):
        """Zero never clears the minimum."""
        decision = validate_bid(running(), "a", Decimal("0"), T0)
        assert decision.reason is RejectionReason.BID_TOO_LOW

    def test_current_leader_cannot_outbid_self(self):
        """The leader may not raise their own bid."""
        auction = running(current_bid=Decimal("150"), leader_id="a", bid_count=1)
        decision = validate_bid(auction, "a", Decimal("200"), T0)
        assert decision.reason is RejectionReason.ALREADY_HIGH_BIDDER

    def test_self_outbid_allowed_by_policy(self):
        """The policy switch allows self-outbidding."""
        auction = running(current_bid=Decimal("150"), leader_id="a", bid_count=1)
        decision = validate_bid(
            auction, "a", Decimal("200"), T0, BiddingPolicy(allow_self_outbid=True)
        )
        assert isinstance(decision, Accepted)

    def test_increment_checked_before_leadership(self):
        """A too-small raise by the leader reports BidTooLow."""
        auction = running(current_bid=Decimal("150"), leader_id="a", bid_count=1)
        decision = validate_bid(auction, "a", Decimal("151"), T0)
        assert decision.reason is RejectionReason.BID_TOO_LOW


class TestReserve:
    """Test suite for reserve tracking."""

    def test_below_reserve_accepted_but_unmet(self):
        """Bids below the reserve are accepted without meeting it."""
        decision = validate_bid(running(reserve_price=Decimal("1000")), "a", Decimal("800"), T0)
        assert isinstance(decision, Accepted)
        assert decision.reserve_met is False

    def test_reserve_met_at_reserve(self):
        """A bid at the reserve meets it."""
        decision = validate_bid(running(reserve_price=Decimal("1000")), "a", Decimal("1000"), T0)
        assert decision.reserve_met is True

    def test_reserve_met_is_sticky(self):
        """Once met, the reserve stays met."""
        auction = running(
            reserve_price=Decimal("1000"),
            reserve_met=True,
            current_bid=Decimal("1000"),
            leader_id="a",
            bid_count=1,
        )
        decision = validate_bid(auction, "b", Decimal("1010"), T0)
        assert decision.reserve_met is True

    def test_no_reserve_is_always_met(self):
        """Without a reserve it counts as met."""
        assert validate_bid(running(), "a", Decimal("100"), T0).reserve_met is True


class TestAutoExtend:
    """Test suite for the anti-snipe window."""

    def test_bid_inside_window_extends_from_now(self):
        """A late bid extends to now plus the window."""
        auction = running(auto_extend=True, extend_minutes=5, end_at=T0 + timedelta(seconds=30))
        decision = validate_bid(auction, "a", Decimal("100"), T0)
        assert decision.new_end_at == T0 + timedelta(minutes=5)

    def test_bid_outside_window_keeps_deadline(self):
        """Early bids keep the deadline."""
        auction = running(auto_extend=True, extend_minutes=5, end_at=T0 + timedelta(minutes=6))
        assert validate_bid(auction, "a", Decimal("100"), T0).new_end_at is None

    def test_disabled_auto_extend(self):
        """No extension when auto-extend is off."""
        auction = running(auto_extend=False, end_at=T0 + timedelta(seconds=30))
        assert validate_bid(auction, "a", Decimal("100"), T0).new_end_at is None

    def test_apply_decision_records_extension(self):
        """Applying the decision records the new end and count."""
        auction = running(auto_extend=True, extend_minutes=5, end_at=T0 + timedelta(seconds=30))
        decision = validate_bid(auction, "a", Decimal("100"), T0)
        updated = apply_decision(auction, "a", decision, T0)
        assert updated.end_at == T0 + timedelta(minutes=5)
        assert updated.extension_count == 1
        assert updated.last_extended_at == T0
        assert updated.current_bid == Decimal("100")
        assert updated.leader_id == "a"
        assert updated.bid_count == 1
        # The snapshot handed in is never mutated.
        assert auction.current_bid is None
        assert auction.end_at == T0 + timedelta(seconds=30)
