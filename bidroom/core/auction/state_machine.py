"""
Auction State Machine - lifecycle and bid application.

    setup --start--> active --deadline/end--> ended
      |                 |
      +----cancel-------+-----------------> cancelled

Every operation takes the auction's lock through the store, so
validate-then-append, deadline evaluation and manual end/cancel are
serialized per auction. Listeners (the broadcast channel) are notified and
settlement is emitted only after the lock has been released, from copies
taken inside it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from bidroom.core.auction.models import (
    Auction,
    AuctionConfig,
    AuctionState,
    Bid,
    EndReason,
    EventType,
    utcnow,
)
from bidroom.core.auction.settlement import (
    SettlementHandoff,
    SettlementOutbox,
    SettlementRequest,
    compute_settlement,
    settlement_metadata,
)
from bidroom.core.auction.validator import BidValidator, Rejected
from bidroom.core.errors import CollaboratorError, InvalidBidAmount, LockTimeout, NotAuthorized
from bidroom.core.storage.store import AuctionRecord, AuctionStore
from bidroom.utils.logger import get_logger
from bidroom.utils.validation import parse_amount

logger = get_logger("state_machine")

# Actor id used by the scheduler and other in-process callers
SYSTEM_ACTOR = "system"


# =============================================================================
# Results
# =============================================================================


@dataclass
class BidOutcome:
    """Result of submit_bid. Exactly one of bid / rejection is set."""
    auction: Auction
    bid: Optional[Bid] = None
    rejection: Optional[Rejected] = None

    @property
    def accepted(self) -> bool:
        return self.bid is not None


@dataclass
class AuctionClosed:
    """An auction that has just reached ended or cancelled."""
    auction: Auction
    reason: Optional[EndReason] = None  # None for cancellation
    settlement: Optional[SettlementRequest] = None
    order_id: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.auction.state == AuctionState.CANCELLED

    @property
    def winner_id(self) -> Optional[str]:
        return self.settlement.winner_id if self.settlement else None

    @property
    def final_amount(self):
        return self.settlement.final_amount if self.settlement else None


class AuctionListener:
    """Receives lifecycle notifications after the auction lock is released."""

    async def on_started(self, auction: Auction) -> None:
        pass

    async def on_bid_accepted(self, bid: Bid, auction: Auction) -> None:
        pass

    async def on_closed(self, closed: AuctionClosed) -> None:
        pass

    async def on_settled(self, closed: AuctionClosed) -> None:
        """Called for auctions with a winner once the order emission has run."""
        pass


# =============================================================================
# State machine
# =============================================================================


class AuctionStateMachine:
    """
    Owns the auction lifecycle.

    Args:
        store: Auction record store
        validator: Bid validator
        handoff: Settlement handoff; None disables order emission
        outbox: Retry outbox for failed emissions; None means no retry
    """

    def __init__(
        self,
        store: AuctionStore,
        validator: Optional[BidValidator] = None,
        handoff: Optional[SettlementHandoff] = None,
        outbox: Optional[SettlementOutbox] = None,
    ):
        self.store = store
        self.validator = validator or BidValidator()
        self.handoff = handoff
        self.outbox = outbox
        self._listeners: List[AuctionListener] = []

    def add_listener(self, listener: AuctionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: AuctionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, method: str, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                await getattr(listener, method)(*args)
            except Exception:
                logger.exception(f"Listener {type(listener).__name__}.{method} failed")

    @staticmethod
    def _authorize(record: AuctionRecord, actor_id: str, action: str) -> None:
        if actor_id not in (record.auction.seller_id, SYSTEM_ACTOR):
            raise NotAuthorized(
                f"Only the seller can {action} this auction", record.auction.auction_id
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(
        self, config: AuctionConfig, now: Optional[datetime] = None, auto_start: bool = False
    ) -> Auction:
        """Create an auction in setup, optionally opening it right away."""
        auction = await self.store.create(config, now)
        if auto_start:
            auction = await self.start(auction.auction_id, config.seller_id, now)
        return auction

    async def start(self, auction_id: str, actor_id: str, now: Optional[datetime] = None) -> Auction:
        """
        setup -> active.

        Raises:
            NotAuthorized: actor is not the seller
            InvalidTransition: auction is not in setup
        """
        now = now or utcnow()
        async with self.store.locked(auction_id) as record:
            self._authorize(record, actor_id, "start")
            record.transition(AuctionState.ACTIVE, now)
            record.record_event(EventType.STARTED, actor_id, {"end_at": record.auction.end_at.isoformat()}, now)
            auction = record.auction.snapshot()

        logger.info(f"Auction {auction_id[:8]} started, closes at {auction.end_at.isoformat()}")
        await self._notify("on_started", auction)
        return auction

    async def submit_bid(
        self, auction_id: str, bidder_id: str, amount: Any, now: Optional[datetime] = None
    ) -> BidOutcome:
        """
        Validate and, if accepted, apply a bid atomically.

        A rejection leaves the auction untouched and is not broadcast.

        Raises:
            InvalidBidAmount: amount is not a positive money value
            AuctionNotFound: unknown auction
            LockTimeout: auction busy, retry
        """
        now = now or utcnow()
        try:
            amount = parse_amount(amount, "amount")
        except ValueError as e:
            raise InvalidBidAmount(str(e), auction_id)

        async with self.store.locked(auction_id) as record:
            result = self.validator.validate(record.auction, bidder_id, amount, now)
            if result.accepted:
                bid = record.append_bid(Bid(auction_id=auction_id, bidder_id=bidder_id,
                                            amount=amount, placed_at=now))
                record.record_event(EventType.BID, bidder_id,
                                    {"bid_id": bid.bid_id, "amount": str(amount)}, now)
                snapshot = record.auction.snapshot()
                outcome = BidOutcome(auction=snapshot, bid=snapshot.leading_bid)
            else:
                outcome = BidOutcome(auction=record.auction.snapshot(), rejection=result)

        if outcome.accepted:
            logger.info(f"Bid accepted on {auction_id[:8]}: {bidder_id} leads at {amount}")
            await self._notify("on_bid_accepted", outcome.bid, outcome.auction)
        return outcome

    async def evaluate_deadline(self, auction_id: str, now: Optional[datetime] = None) -> Optional[AuctionClosed]:
        """
        End the auction if its deadline has passed.

        Idempotent: returns None when there is nothing to do (not active,
        deadline not reached, or already ended by someone else).
        """
        now = now or utcnow()
        async with self.store.locked(auction_id) as record:
            if record.auction.state != AuctionState.ACTIVE or now < record.auction.end_at:
                return None
            closed = self._close(record, EndReason.TIME_EXPIRED, SYSTEM_ACTOR, now)

        return await self._after_close(closed)

    async def end(self, auction_id: str, actor_id: str, now: Optional[datetime] = None) -> AuctionClosed:
        """
        Manual early end. Only while active.

        Raises:
            NotAuthorized: actor is not the seller
            InvalidTransition: auction is not active
        """
        now = now or utcnow()
        async with self.store.locked(auction_id) as record:
            self._authorize(record, actor_id, "end")
            # A deadline that already passed wins over the manual request
            reason = EndReason.TIME_EXPIRED if now >= record.auction.end_at else EndReason.MANUAL
            closed = self._close(record, reason, actor_id, now)

        return await self._after_close(closed)

    async def cancel(self, auction_id: str, actor_id: str, now: Optional[datetime] = None) -> AuctionClosed:
        """
        setup|active -> cancelled. Bids stay for audit; nobody wins.

        Raises:
            NotAuthorized: actor is not the seller
            InvalidTransition: auction already ended or cancelled
        """
        now = now or utcnow()
        async with self.store.locked(auction_id) as record:
            self._authorize(record, actor_id, "cancel")
            record.transition(AuctionState.CANCELLED, now)
            record.record_event(EventType.CANCELLED, actor_id, {"bid_count": len(record.auction.bids)}, now)
            closed = AuctionClosed(auction=record.auction.snapshot())

        logger.info(f"Auction {auction_id[:8]} cancelled by {actor_id}")
        await self._notify("on_closed", closed)
        return closed

    async def sweep(self, now: Optional[datetime] = None) -> List[AuctionClosed]:
        """Evaluate every active auction past its deadline."""
        now = now or utcnow()
        closed = []
        for auction_id in self.store.expired_ids(now):
            try:
                result = await self.evaluate_deadline(auction_id, now)
            except LockTimeout:
                # Busy auctions are picked up by the next sweep
                continue
            if result is not None:
                closed.append(result)
        return closed

    # =========================================================================
    # Closing
    # =========================================================================

    def _close(self, record: AuctionRecord, reason: EndReason, actor_id: str, now: datetime) -> AuctionClosed:
        """Inside the lock: active -> ended, winner metadata, settlement request."""
        record.transition(AuctionState.ENDED, now)

        patch = settlement_metadata(record.auction)
        patch["end_reason"] = reason.value
        settlement = compute_settlement(record.auction)
        if settlement is not None:
            patch["settlement_requested"] = True
        record.patch_metadata(patch)

        record.record_event(
            EventType.ENDED,
            actor_id,
            {"reason": reason.value, "winner_id": patch["winner_id"], "final_amount": patch["final_amount"]},
            now,
        )
        if settlement is not None:
            record.record_event(EventType.SETTLEMENT_REQUESTED, None, settlement.to_dict(), now)

        return AuctionClosed(auction=record.auction.snapshot(), reason=reason, settlement=settlement)

    async def _after_close(self, closed: AuctionClosed) -> AuctionClosed:
        auction_id = closed.auction.auction_id
        if closed.settlement:
            logger.info(f"Auction {auction_id[:8]} ended ({closed.reason.value}): "
                        f"{closed.winner_id} wins at {closed.final_amount}")
        else:
            logger.info(f"Auction {auction_id[:8]} ended ({closed.reason.value}) without bids")

        await self._notify("on_closed", closed)

        if closed.settlement is None:
            return closed

        closed.order_id = await self._emit(closed.settlement)
        if closed.order_id:
            closed.auction = self.store.get(auction_id)
        await self._notify("on_settled", closed)
        return closed

    async def _emit(self, request: SettlementRequest) -> Optional[str]:
        """The single settlement emission for an auction. Failures go to the outbox."""
        if self.handoff is None:
            return None
        try:
            return await self.handoff.emit(request)
        except (CollaboratorError, LockTimeout) as e:
            logger.warning(f"Settlement emission for {request.auction_id[:8]} failed: {e}")
            if self.outbox is not None:
                self.outbox.submit(request, failed_attempts=1)
            return None


__all__ = [
    "AuctionClosed",
    "AuctionListener",
    "AuctionStateMachine",
    "BidOutcome",
    "SYSTEM_ACTOR",
]
