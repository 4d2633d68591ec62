"""
HTTP + WebSocket boundary for the auction engine.

POST   /auctions                  create (caller is the seller)
GET    /auctions                  list, optionally by deal_room_id / state
GET    /auctions/{id}             current state with bids and participants
GET    /auctions/{id}/bids        bid history
GET    /auctions/{id}/events      deal event log
GET    /auctions/{id}/payment     order id and payment completion
POST   /auctions/{id}/start       setup -> active (seller)
POST   /auctions/{id}/bids        place a bid
POST   /auctions/{id}/end         close early (seller)
POST   /auctions/{id}/cancel      cancel (seller)
WS     /ws?token=...              auction channel
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bidroom import __version__
from bidroom.api.dependencies import (
    IdentityResolver,
    JWTIdentityResolver,
    current_user_id,
    get_engine,
    resolve_identity,
)
from bidroom.api.schemas import (
    AuctionResponse,
    BidPlacedResponse,
    BidRejectedResponse,
    BidResponse,
    CreateAuctionRequest,
    DealEventResponse,
    ErrorResponse,
    PaymentResponse,
    PlaceBidRequest,
)
from bidroom.core.auction.models import AuctionConfig, AuctionState
from bidroom.core.auction.validator import BalanceCheck
from bidroom.core.config import EngineConfig
from bidroom.core.engine import AuctionEngine
from bidroom.core.errors import (
    AuctionError,
    AuctionNotFound,
    CollaboratorError,
    InvalidBidAmount,
    InvalidConfiguration,
    InvalidTransition,
    LockTimeout,
    NotAuthorized,
)
from bidroom.core.orders import OrderService
from bidroom.network.connection import WebSocketConnection
from bidroom.utils.logger import get_logger

logger = get_logger("api")

ERROR_STATUS = {
    InvalidConfiguration: status.HTTP_400_BAD_REQUEST,
    InvalidBidAmount: status.HTTP_400_BAD_REQUEST,
    AuctionNotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    InvalidTransition: status.HTTP_409_CONFLICT,
    LockTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
    CollaboratorError: status.HTTP_502_BAD_GATEWAY,
}


def status_for(error: AuctionError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


router = APIRouter(prefix="/auctions", tags=["auctions"])


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

@router.post("", response_model=AuctionResponse, status_code=201,
             responses={400: {"model": ErrorResponse}})
async def route_auction_create(
    body: CreateAuctionRequest,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    """Create an auction; the caller becomes the seller."""
    config = AuctionConfig(
        deal_room_id=body.deal_room_id,
        seller_id=user_id,
        start_price=body.start_price,
        minimum_increment=body.minimum_increment,
        duration_minutes=body.duration_minutes,
        invitee_ids=body.invitee_ids,
        listing_id=body.listing_id,
    )
    auction = await engine.machine.create(config, auto_start=body.auto_start)
    return AuctionResponse.from_auction(auction)


@router.get("", response_model=List[AuctionResponse])
async def route_auctions_list(
    deal_room_id: Optional[str] = None,
    state: Optional[AuctionState] = Query(default=None),
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    auctions = engine.store.list(state=state, deal_room_id=deal_room_id)
    return [AuctionResponse.from_auction(a) for a in auctions]


@router.get("/{auction_id}", response_model=AuctionResponse, responses={404: {"model": ErrorResponse}})
async def route_auction_detail(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    return AuctionResponse.from_auction(engine.store.get(auction_id))


@router.get("/{auction_id}/bids", response_model=List[BidResponse])
async def route_auction_bids(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    """Bid history, oldest first."""
    return [BidResponse.from_bid(b) for b in engine.store.get(auction_id).bids]


@router.get("/{auction_id}/events", response_model=List[DealEventResponse])
async def route_auction_events(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    return [DealEventResponse.from_event(e) for e in engine.store.get(auction_id).events]


@router.get("/{auction_id}/payment", response_model=PaymentResponse,
            responses={502: {"model": ErrorResponse}})
async def route_auction_payment(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    """Whether the winner has paid. Drives the "pay now" prompt."""
    payment_status = await engine.handoff.payment_status(auction_id)
    auction = engine.store.get(auction_id)
    return PaymentResponse(
        auction_id=auction_id,
        order_id=auction.metadata.get("order_id"),
        payment_status=payment_status.value if payment_status else None,
        payment_complete=bool(auction.metadata.get("payment_complete")),
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("/{auction_id}/start", response_model=AuctionResponse,
             responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
async def route_auction_start(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    auction = await engine.machine.start(auction_id, user_id)
    return AuctionResponse.from_auction(auction)


@router.post("/{auction_id}/bids", response_model=BidPlacedResponse, status_code=201,
             responses={422: {"model": BidRejectedResponse}})
async def route_place_bid(
    auction_id: str,
    body: PlaceBidRequest,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    """Place a bid as the caller. Rejections come back to the caller only."""
    outcome = await engine.machine.submit_bid(auction_id, user_id, body.amount)
    if not outcome.accepted:
        return JSONResponse(status_code=422, content=outcome.rejection.to_dict())
    return BidPlacedResponse(
        bid=BidResponse.from_bid(outcome.bid),
        auction=AuctionResponse.from_auction(outcome.auction),
    )


@router.post("/{auction_id}/end", response_model=AuctionResponse,
             responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
async def route_auction_end(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    """Close an active auction early and settle it."""
    closed = await engine.machine.end(auction_id, user_id)
    return AuctionResponse.from_auction(closed.auction)


@router.post("/{auction_id}/cancel", response_model=AuctionResponse,
             responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
async def route_auction_cancel(
    auction_id: str,
    user_id: str = Depends(current_user_id),
    engine: AuctionEngine = Depends(get_engine),
):
    closed = await engine.machine.cancel(auction_id, user_id)
    return AuctionResponse.from_auction(closed.auction)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def _bearer(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


def create_app(
    config: Optional[EngineConfig] = None,
    order_service: Optional[OrderService] = None,
    identity_resolver: Optional[IdentityResolver] = None,
    balance_check: Optional[BalanceCheck] = None,
) -> FastAPI:
    """
    Build the FastAPI application around a fresh engine.

    Args:
        config: Engine configuration (defaults to EngineConfig())
        order_service: Order collaborator override
        identity_resolver: token -> user id; defaults to JWT verification
            with config.jwt_secret
        balance_check: Optional funds predicate for the validator

    Raises:
        InvalidConfiguration: if no resolver is given and no JWT secret is set
    """
    config = config or EngineConfig()
    if identity_resolver is None:
        if not config.jwt_secret:
            raise InvalidConfiguration("jwt_secret is required unless an identity resolver is supplied")
        identity_resolver = JWTIdentityResolver(config.jwt_secret, config.jwt_algorithm)

    engine = AuctionEngine.from_config(config, order_service, balance_check)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await engine.start()
        logger.info("Auction engine started")
        yield
        await engine.stop()
        logger.info("Auction engine stopped")

    app = FastAPI(title="bidroom", version=__version__, lifespan=lifespan)
    app.state.engine = engine
    app.state.identity_resolver = identity_resolver

    @app.exception_handler(AuctionError)
    async def auction_error_handler(request: Request, exc: AuctionError):
        code = status_for(exc)
        if code >= 500:
            logger.warning(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
        return JSONResponse(status_code=code, content={"error": exc.code, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ())[1:])}: {e.get('msg')}" for e in errors
        )
        return JSONResponse(status_code=400, content={"error": "InvalidRequest", "message": message})

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "auctions": len(engine.store.ids_in_state(AuctionState.ACTIVE))}

    @app.websocket("/ws")
    async def auction_channel(websocket: WebSocket):
        user_id = resolve_identity(app.state, _bearer(websocket))
        if not user_id:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        conn = WebSocketConnection(websocket, user_id)
        engine.channel.register(conn)
        try:
            while True:
                raw = await websocket.receive_text()
                await engine.channel.handle_message(conn, raw)
        except WebSocketDisconnect:
            logger.debug(f"{user_id} disconnected ({conn.connection_id[:8]})")
        finally:
            await engine.channel.disconnect(conn)

    return app
