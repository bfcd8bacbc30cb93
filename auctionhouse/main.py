from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from fastapi import (
    Body,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from jsonschema import ValidationError

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import stats as admin_stats
from .auction.broadcast import BroadcastPublisher
from .auction.engine import BiddingEngine
from .auction.locks import AuctionLocks
from .auction.models import BidResult
from .auction.validator import BiddingPolicy
from .config import ServerConfig, get_server_config
from .errors import (
    AuctionNotFound,
    InvalidTransition,
    InvariantViolation,
    LockTimeout,
    TransactionConflict,
    TransientBidError,
)
from .ledger.service import LedgerService
from .ledger.settlement import LoggingSettlementListener
from .lifecycle.monitor import LifecycleMonitor
from .storage import build_storage
from .transport.canonical_json import canonical_dumps
from .transport.timestamps import TimestampError
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    storage = build_storage(server_config)
    ledger_service = LedgerService(storage)
    locks = AuctionLocks(server_config.bidding.lock_timeout_ms)
    broadcast = BroadcastPublisher(
        backend=server_config.broadcast.backend,
        options=dict(server_config.broadcast.options),
    )
    listeners = [LoggingSettlementListener()]
    engine = BiddingEngine(
        ledger_service,
        locks,
        broadcast,
        policy=BiddingPolicy(allow_self_outbid=server_config.bidding.allow_self_outbid),
        max_attempts=server_config.bidding.max_commit_attempts,
        listeners=listeners,
    )
    monitor = LifecycleMonitor(
        ledger_service,
        locks,
        broadcast,
        ending_soon=timedelta(minutes=server_config.lifecycle.ending_soon_minutes),
        listeners=listeners,
    )

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.ledger = ledger_service
    app.state.broadcast = broadcast
    app.state.engine = engine
    app.state.monitor = monitor
    app.state.start_time = datetime.now(timezone.utc)

    yield

    close = getattr(storage, "close", None)
    if close is not None:
        await close()


app = FastAPI(
    title="Auction House Bidding Server",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)


@app.exception_handler(AuctionNotFound)
async def auction_not_found(request: Request, exc: AuctionNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(TransientBidError)
async def transient_failure(request: Request, exc: TransientBidError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "transient": True},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(LockTimeout)
@app.exception_handler(TransactionConflict)
async def auction_busy(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("request %s hit a busy auction: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "transient": True},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(InvariantViolation)
async def invariant_violation(request: Request, exc: InvariantViolation) -> JSONResponse:
    logger.error("request %s failed: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "auction state inconsistent, nothing was applied"},
    )


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_engine(request: Request) -> BiddingEngine:
    return request.app.state.engine


def get_monitor(request: Request) -> LifecycleMonitor:
    return request.app.state.monitor


def _validate(schemas: SchemaRegistry, name: str, payload: Any) -> None:
    try:
        schemas.validate(name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


def _bid_response(result: BidResult, accepted_status: int) -> JSONResponse:
    code = accepted_status if result.accepted else status.HTTP_409_CONFLICT
    return JSONResponse(status_code=code, content=result.to_dict())


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "auctionhouse",
        "version": app.version,
        "bidding": {
            "lock_timeout_ms": settings.bidding.lock_timeout_ms,
            "allow_self_outbid": settings.bidding.allow_self_outbid,
        },
        "broadcast_backend": settings.broadcast.backend,
    }


@app.post("/auctions", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    ledger: LedgerService = Depends(get_ledger_service),
) -> dict[str, Any]:
    _validate(schemas, "create_auction", payload)
    try:
        auction = await ledger.create_auction(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except TransactionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return auction.public_view()


@app.get("/auctions/{auction_id}", tags=["auctions"])
async def get_auction(
    auction_id: str,
    ledger: LedgerService = Depends(get_ledger_service),
) -> dict[str, Any]:
    auction = await ledger.get_auction(auction_id)
    return auction.public_view()


@app.post("/auctions/{auction_id}/bids", tags=["bidding"])
async def place_bid(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    engine: BiddingEngine = Depends(get_engine),
) -> JSONResponse:
    _validate(schemas, "place_bid", payload)
    result = await engine.place_bid(auction_id, payload["bidder_id"], payload["amount"])
    return _bid_response(result, status.HTTP_201_CREATED)


@app.put("/auctions/{auction_id}/proxy", tags=["bidding"])
async def set_proxy_commitment(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    engine: BiddingEngine = Depends(get_engine),
) -> JSONResponse:
    _validate(schemas, "proxy_commitment", payload)
    result = await engine.set_proxy_commitment(
        auction_id, payload["bidder_id"], payload["max_amount"]
    )
    return _bid_response(result, status.HTTP_200_OK)


@app.post("/auctions/{auction_id}/buy-now", tags=["bidding"])
async def buy_now(
    auction_id: str,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    engine: BiddingEngine = Depends(get_engine),
) -> JSONResponse:
    _validate(schemas, "buy_now", payload)
    result = await engine.buy_now(auction_id, payload["bidder_id"])
    return _bid_response(result, status.HTTP_200_OK)


@app.get("/auctions/{auction_id}/bids", tags=["bidding"])
async def bids_since(
    auction_id: str,
    since: Optional[str] = Query(None, description="ISO-8601 timestamp, exclusive"),
    cursor: Optional[int] = Query(None, ge=0, description="last sequence already seen"),
    engine: BiddingEngine = Depends(get_engine),
) -> dict[str, Any]:
    if since is not None and cursor is not None:
        raise HTTPException(status_code=422, detail="use either since or cursor")
    try:
        bids = await engine.get_bids_since(auction_id, cursor if cursor is not None else since)
    except TimestampError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {
        "auction_id": auction_id,
        "bids": [bid.to_dict() for bid in bids],
        "cursor": bids[-1].sequence if bids else cursor,
    }


@app.post("/auctions/{auction_id}/archive", tags=["lifecycle"])
async def archive_auction(
    auction_id: str,
    monitor: LifecycleMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    try:
        auction = await monitor.archive(auction_id)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return auction.public_view()


@app.post("/lifecycle/sweep", tags=["lifecycle"])
async def sweep_lifecycle(
    authorization: Optional[str] = Header(None),
    settings: ServerConfig = Depends(get_server_settings),
    monitor: LifecycleMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    token = settings.lifecycle.cron_token
    if token is not None and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="unauthorized")
    transitioned = await monitor.sweep()
    return {"transitioned": transitioned, "count": len(transitioned)}


@app.websocket("/auctions/{auction_id}/events")
async def auction_events(websocket: WebSocket, auction_id: str) -> None:
    ledger: LedgerService = websocket.app.state.ledger
    broadcast: BroadcastPublisher = websocket.app.state.broadcast
    try:
        await ledger.get_auction(auction_id)
    except AuctionNotFound:
        await websocket.close(code=4404)
        return
    queue = broadcast.subscribe(auction_id)

    async def forward() -> None:
        while True:
            message = await queue.get()
            await websocket.send_text(canonical_dumps(message).decode())

    sender: Optional[asyncio.Task] = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(forward())
        # Inbound frames are ignored; receiving only detects the disconnect.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("subscriber left auction=%s", auction_id)
    finally:
        if sender is not None:
            await _stop_sender(sender, auction_id)
        broadcast.unsubscribe(auction_id, queue)


async def _stop_sender(sender: asyncio.Task, auction_id: str) -> None:
    """Cancel the forwarding task and collect its outcome."""
    sender.cancel()
    try:
        await sender
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.warning("event stream send failed auction=%s", auction_id, exc_info=True)
