"""Shared auction data structures."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from ..transport.timestamps import format_timestamp, parse_timestamp


class AuctionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    ENDING_SOON = "ENDING_SOON"
    CLOSED = "CLOSED"
    ARCHIVED = "ARCHIVED"


BIDDABLE_STATUSES = frozenset({AuctionStatus.RUNNING, AuctionStatus.ENDING_SOON})
OPEN_STATUSES = frozenset(
    {AuctionStatus.SCHEDULED, AuctionStatus.RUNNING, AuctionStatus.ENDING_SOON}
)


class RejectionReason(str, Enum):
    AUCTION_NOT_ACTIVE = "AuctionNotActive"
    AUCTION_ENDED = "AuctionEnded"
    BID_TOO_LOW = "BidTooLow"
    ALREADY_HIGH_BIDDER = "AlreadyHighBidder"
    SELLER_CANNOT_BID = "SellerCannotBid"
    BUY_NOW_NOT_AVAILABLE = "BuyNowNotAvailable"
    MAX_NOT_RAISED = "MaxNotRaised"


def to_amount(value: Any) -> Decimal:
    """Coerce a JSON number or numeric string into a finite Decimal."""
    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValueError(f"invalid amount {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid amount {value!r}")
    return amount


def _optional_amount(value: Any) -> Optional[Decimal]:
    return None if value is None else to_amount(value)


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _optional_time(value: Any) -> Optional[datetime]:
    return None if value is None else parse_timestamp(value)


@dataclass
class Auction:
    auction_id: str
    product_id: str
    store_id: str
    start_price: Decimal
    min_increment: Decimal
    start_at: datetime
    end_at: datetime
    reserve_price: Optional[Decimal] = None
    current_bid: Optional[Decimal] = None
    leader_id: Optional[str] = None
    seller_id: Optional[str] = None
    buy_now_price: Optional[Decimal] = None
    auto_extend: bool = False
    extend_minutes: int = 5
    status: AuctionStatus = AuctionStatus.SCHEDULED
    reserve_met: bool = False
    extension_count: int = 0
    last_extended_at: Optional[datetime] = None
    bid_count: int = 0
    winner_id: Optional[str] = None
    winning_bid_id: Optional[str] = None
    closed_at: Optional[datetime] = None
    version: int = 0

    def copy(self) -> "Auction":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "product_id": self.product_id,
            "store_id": self.store_id,
            "start_price": str(self.start_price),
            "min_increment": str(self.min_increment),
            "start_at": format_timestamp(self.start_at),
            "end_at": format_timestamp(self.end_at),
            "reserve_price": _optional_str(self.reserve_price),
            "current_bid": _optional_str(self.current_bid),
            "leader_id": self.leader_id,
            "seller_id": self.seller_id,
            "buy_now_price": _optional_str(self.buy_now_price),
            "auto_extend": self.auto_extend,
            "extend_minutes": self.extend_minutes,
            "status": self.status.value,
            "reserve_met": self.reserve_met,
            "extension_count": self.extension_count,
            "last_extended_at": format_timestamp(self.last_extended_at),
            "bid_count": self.bid_count,
            "winner_id": self.winner_id,
            "winning_bid_id": self.winning_bid_id,
            "closed_at": format_timestamp(self.closed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Auction":
        return cls(
            auction_id=data["auction_id"],
            product_id=data["product_id"],
            store_id=data["store_id"],
            start_price=to_amount(data["start_price"]),
            min_increment=to_amount(data["min_increment"]),
            start_at=parse_timestamp(data["start_at"]),
            end_at=parse_timestamp(data["end_at"]),
            reserve_price=_optional_amount(data.get("reserve_price")),
            current_bid=_optional_amount(data.get("current_bid")),
            leader_id=data.get("leader_id"),
            seller_id=data.get("seller_id"),
            buy_now_price=_optional_amount(data.get("buy_now_price")),
            auto_extend=bool(data.get("auto_extend", False)),
            extend_minutes=int(data.get("extend_minutes", 5)),
            status=AuctionStatus(data.get("status", AuctionStatus.SCHEDULED.value)),
            reserve_met=bool(data.get("reserve_met", False)),
            extension_count=int(data.get("extension_count", 0)),
            last_extended_at=_optional_time(data.get("last_extended_at")),
            bid_count=int(data.get("bid_count", 0)),
            winner_id=data.get("winner_id"),
            winning_bid_id=data.get("winning_bid_id"),
            closed_at=_optional_time(data.get("closed_at")),
            version=int(data.get("version", 0)),
        )

    def public_view(self) -> dict[str, Any]:
        """Auction fields safe to show bidders; the reserve amount stays hidden."""
        payload = self.to_dict()
        payload.pop("reserve_price")
        payload.pop("version")
        payload["has_reserve"] = self.reserve_price is not None
        return payload


@dataclass(frozen=True)
class Bid:
    bid_id: str
    auction_id: str
    bidder_id: str
    amount: Decimal
    created_at: datetime
    sequence: int
    is_proxy_generated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "amount": str(self.amount),
            "created_at": format_timestamp(self.created_at),
            "sequence": self.sequence,
            "is_proxy_generated": self.is_proxy_generated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bid":
        return cls(
            bid_id=data["bid_id"],
            auction_id=data["auction_id"],
            bidder_id=data["bidder_id"],
            amount=to_amount(data["amount"]),
            created_at=parse_timestamp(data["created_at"]),
            sequence=int(data["sequence"]),
            is_proxy_generated=bool(data.get("is_proxy_generated", False)),
        )


@dataclass(frozen=True)
class ProxyCommitment:
    auction_id: str
    bidder_id: str
    max_amount: Decimal
    created_at: datetime

    def strength(self) -> tuple[Decimal, float]:
        """Ordering key: higher maximum wins, earlier recording breaks ties."""
        return (self.max_amount, -self.created_at.timestamp())

    def to_dict(self) -> dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "max_amount": str(self.max_amount),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProxyCommitment":
        return cls(
            auction_id=data["auction_id"],
            bidder_id=data["bidder_id"],
            max_amount=to_amount(data["max_amount"]),
            created_at=parse_timestamp(data["created_at"]),
        )


@dataclass
class BidResult:
    accepted: bool
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    minimum_amount: Optional[Decimal] = None
    bid: Optional[Bid] = None
    proxy_bids: list[Bid] = field(default_factory=list)
    new_end_at: Optional[datetime] = None
    auction: Optional[Auction] = None

    @classmethod
    def rejected(
        cls,
        reason: RejectionReason,
        message: str,
        *,
        minimum_amount: Optional[Decimal] = None,
        auction: Optional[Auction] = None,
    ) -> "BidResult":
        return cls(
            accepted=False,
            reason=reason,
            message=message,
            minimum_amount=minimum_amount,
            auction=auction,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"accepted": self.accepted}
        if self.reason is not None:
            payload["reason"] = self.reason.value
            payload["message"] = self.message
        if self.minimum_amount is not None:
            payload["minimum_amount"] = str(self.minimum_amount)
        if self.bid is not None:
            payload["bid"] = self.bid.to_dict()
        if self.proxy_bids:
            payload["proxy_bids"] = [bid.to_dict() for bid in self.proxy_bids]
        if self.new_end_at is not None:
            payload["new_end_at"] = format_timestamp(self.new_end_at)
        if self.auction is not None:
            payload["auction"] = self.auction.public_view()
        return payload
