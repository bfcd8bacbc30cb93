"""Operational stats endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.models import AuctionStatus
from ..ledger.service import LedgerService

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


@router.get("/stats")
async def stats(ledger: LedgerService = Depends(_get_ledger)) -> dict[str, Any]:
    auctions = await ledger.list_auctions()
    total_auctions = len(auctions)
    total_bids = sum(auction.bid_count for auction in auctions)
    settled = [
        auction
        for auction in auctions
        if auction.status in (AuctionStatus.CLOSED, AuctionStatus.ARCHIVED)
    ]
    with_winner = sum(1 for auction in settled if auction.winner_id)
    no_sale_rate = ((len(settled) - with_winner) / len(settled)) if settled else 0.0
    return {
        "total_auctions": total_auctions,
        "total_bids": total_bids,
        "status_summary": await ledger.status_summary(),
        "settled_auctions": len(settled),
        "no_sale_rate": round(no_sale_rate, 4),
        "extensions": sum(auction.extension_count for auction in auctions),
    }
