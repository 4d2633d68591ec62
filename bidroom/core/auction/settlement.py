"""
Settlement Handoff - winner resolution and order creation after an auction ends.

The state machine decides *that* an auction settles; this module decides
*what* the settlement is and hands it to the external order service. The
auction's ``ended`` state is never rolled back because of anything here.

- compute_settlement: winner and amount from an ended auction (pure)
- SettlementHandoff: one bounded-timeout create_order call, order linking,
  payment status reads
- SettlementOutbox: caller-layer retry with exponential backoff and a
  dead-letter list for requests that never went through
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from bidroom.core.auction.models import Auction, AuctionState, EventType, utcnow
from bidroom.core.errors import CollaboratorError, CollaboratorTimeout, LockTimeout
from bidroom.core.orders import OrderService, PaymentStatus
from bidroom.utils.logger import get_logger

if TYPE_CHECKING:
    from bidroom.core.storage.store import AuctionStore

logger = get_logger("settlement")


@dataclass(frozen=True)
class SettlementRequest:
    """What the order service needs to bill the winner."""
    auction_id: str
    winner_id: str
    seller_id: str
    final_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auction_id": self.auction_id,
            "winner_id": self.winner_id,
            "seller_id": self.seller_id,
            "final_amount": str(self.final_amount),
        }


def compute_settlement(auction: Auction) -> Optional[SettlementRequest]:
    """
    Resolve the settlement for an ended auction.

    Returns:
        SettlementRequest, or None when the auction has no bids or did not end
        normally (cancelled auctions never settle)
    """
    if auction.state != AuctionState.ENDED or not auction.bids:
        return None
    return SettlementRequest(
        auction_id=auction.auction_id,
        winner_id=auction.highest_bidder_id,
        seller_id=auction.seller_id,
        final_amount=auction.current_highest_bid,
    )


def settlement_metadata(auction: Auction) -> Dict[str, Any]:
    """Metadata patch written in the same locked step that ends the auction."""
    if not auction.bids:
        return {"winner_id": None, "final_amount": None}
    return {
        "winner_id": auction.highest_bidder_id,
        "final_amount": str(auction.current_highest_bid),
    }


class SettlementHandoff:
    """
    Talks to the order service on behalf of the engine.

    Args:
        store: Auction store, for linking order ids back into metadata
        orders: External order/payment collaborator
        timeout: Seconds allowed for one create_order call
        payment_status_timeout: Seconds allowed for one status read
    """

    def __init__(
        self,
        store: "AuctionStore",
        orders: OrderService,
        timeout: float = 5.0,
        payment_status_timeout: float = 5.0,
    ):
        self.store = store
        self.orders = orders
        self.timeout = timeout
        self.payment_status_timeout = payment_status_timeout

    async def emit(self, request: SettlementRequest) -> str:
        """
        Ask the order service for a payable order. Exactly one attempt.

        Returns:
            The order id, already linked into the auction's metadata

        Raises:
            CollaboratorTimeout: no answer within ``timeout``
            CollaboratorError: the order service refused or failed
        """
        try:
            order_id = await asyncio.wait_for(
                self.orders.create_order(
                    request.auction_id, request.winner_id, request.seller_id, request.final_amount
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise CollaboratorTimeout(
                f"create_order timed out after {self.timeout}s", request.auction_id
            )
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError(f"create_order failed: {e}", request.auction_id) from e

        await self._link_order(request, order_id)
        logger.info(f"Settlement for {request.auction_id[:8]}: order {order_id} "
                    f"({request.winner_id} pays {request.final_amount})")
        return order_id

    async def _link_order(self, request: SettlementRequest, order_id: str) -> None:
        async with self.store.locked(request.auction_id) as record:
            if record.auction.metadata.get("order_id") == order_id:
                return
            record.patch_metadata({"order_id": order_id})
            record.record_event(EventType.ORDER_LINKED, None, {"order_id": order_id}, utcnow())

    async def payment_status(self, auction_id: str) -> Optional[PaymentStatus]:
        """
        Current payment status, or None while no order exists.

        Raises:
            AuctionNotFound: unknown auction
            CollaboratorTimeout / CollaboratorError: status read failed
        """
        auction = self.store.get(auction_id)
        if auction.metadata.get("payment_complete"):
            return PaymentStatus.COMPLETED
        order_id = auction.metadata.get("order_id")
        if not order_id:
            return None

        try:
            status = await asyncio.wait_for(
                self.orders.get_payment_status(order_id), timeout=self.payment_status_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Payment status for {auction_id[:8]} timed out")
            raise CollaboratorTimeout(
                f"get_payment_status timed out after {self.payment_status_timeout}s", auction_id
            )
        except CollaboratorError as e:
            logger.warning(f"Payment status for {auction_id[:8]} failed: {e}")
            raise

        if status == PaymentStatus.COMPLETED:
            await self.store.patch_metadata(auction_id, {"payment_complete": True})
        return status

    async def is_payment_complete(self, auction_id: str) -> bool:
        return await self.payment_status(auction_id) == PaymentStatus.COMPLETED

    def unsettled(self) -> List[SettlementRequest]:
        """Ended auctions with a winner whose order was never linked."""
        requests = []
        for auction in self.store.list(state=AuctionState.ENDED):
            request = compute_settlement(auction)
            if request is not None and not auction.metadata.get("order_id"):
                requests.append(request)
        return requests


class SettlementOutbox:
    """
    Retries failed settlement emissions in the background.

    Attempt n (counting from 0) waits ``backoff * 2 ** (n - 1)`` seconds
    before running. After ``max_retries`` failed retries the request is
    dead-lettered; it stays visible in ``dead_letters`` until ``requeue``.
    """

    def __init__(self, handoff: SettlementHandoff, max_retries: int = 5, backoff: float = 0.5):
        self.handoff = handoff
        self.max_retries = max_retries
        self.backoff = backoff
        self.pending: Dict[str, SettlementRequest] = {}
        self.dead_letters: Dict[str, SettlementRequest] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, request: SettlementRequest, failed_attempts: int = 0) -> asyncio.Task:
        """Schedule delivery; at most one in-flight task per auction."""
        task = self._tasks.get(request.auction_id)
        if task is not None and not task.done():
            return task

        self.pending[request.auction_id] = request
        task = asyncio.create_task(self._deliver(request, failed_attempts))
        self._tasks[request.auction_id] = task
        return task

    async def _deliver(self, request: SettlementRequest, failed_attempts: int) -> Optional[str]:
        attempt = failed_attempts
        try:
            while attempt <= self.max_retries:
                if attempt > 0:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                try:
                    order_id = await self.handoff.emit(request)
                except (CollaboratorError, LockTimeout) as e:
                    attempt += 1
                    logger.warning(f"Settlement attempt {attempt} for {request.auction_id[:8]} failed: {e}")
                    continue
                self.pending.pop(request.auction_id, None)
                return order_id

            self.pending.pop(request.auction_id, None)
            self.dead_letters[request.auction_id] = request
            logger.error(f"Settlement for {request.auction_id[:8]} dead-lettered after {attempt} attempts")
            return None
        finally:
            self._tasks.pop(request.auction_id, None)

    def requeue(self, auction_id: str) -> Optional[asyncio.Task]:
        request = self.dead_letters.pop(auction_id, None)
        if request is None:
            return None
        return self.submit(request)

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()


__all__ = [
    "SettlementHandoff",
    "SettlementOutbox",
    "SettlementRequest",
    "compute_settlement",
    "settlement_metadata",
]
