"""
Order/payment collaborator.

The engine never owns orders or payment state. It asks an OrderService to
create a payable order for the winner and later reads back whether that
order has been paid. Two implementations:

- InMemoryOrderService: local dev, demo and tests
- HttpOrderService: a remote orders API over aiohttp
"""

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Protocol

import aiohttp

from bidroom.core.errors import CollaboratorError
from bidroom.utils.logger import get_logger

logger = get_logger("orders")


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def from_order_status(cls, status: Optional[str]) -> "PaymentStatus":
        """Map a remote order/payment status string onto the three engine states."""
        status = (status or "").lower()
        if status in ("completed", "paid", "succeeded"):
            return cls.COMPLETED
        if status in ("failed", "cancelled", "canceled", "refunded"):
            return cls.FAILED
        return cls.PENDING


class OrderService(Protocol):
    async def create_order(
        self, auction_id: str, winner_id: str, seller_id: str, amount: Decimal
    ) -> str:
        ...

    async def get_payment_status(self, order_id: str) -> PaymentStatus:
        ...


# =============================================================================
# In-memory
# =============================================================================


@dataclass
class OrderRecord:
    order_id: str
    auction_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING


class InMemoryOrderService:
    """
    Process-local order book.

    Args:
        fail_times: Number of create_order calls that raise before succeeding
        delay: Seconds each create_order call sleeps (to exercise timeouts)
    """

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.orders: Dict[str, OrderRecord] = {}
        self.fail_times = fail_times
        self.delay = delay
        self.calls: List[str] = []  # auction ids, one per create_order attempt

    async def create_order(
        self, auction_id: str, winner_id: str, seller_id: str, amount: Decimal
    ) -> str:
        self.calls.append(auction_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise CollaboratorError("Order service unavailable", auction_id)

        # One order per auction, even if the caller retries after a lost reply
        for record in self.orders.values():
            if record.auction_id == auction_id:
                return record.order_id

        order_id = str(uuid.uuid4())
        self.orders[order_id] = OrderRecord(order_id, auction_id, winner_id, seller_id, Decimal(amount))
        logger.info(f"Order {order_id[:8]} created for auction {auction_id[:8]}: {winner_id} owes {amount}")
        return order_id

    async def get_payment_status(self, order_id: str) -> PaymentStatus:
        record = self.orders.get(order_id)
        if record is None:
            raise CollaboratorError(f"Unknown order {order_id}")
        return record.status

    def mark_paid(self, order_id: str) -> None:
        self.orders[order_id].status = PaymentStatus.COMPLETED

    def mark_failed(self, order_id: str) -> None:
        self.orders[order_id].status = PaymentStatus.FAILED


# =============================================================================
# HTTP
# =============================================================================


class HttpOrderService:
    """
    Orders API client.

    POST {base_url}/orders            -> {"order_id": ...}
    GET  {base_url}/orders/{order_id} -> {"status": ...}
    """

    def __init__(self, base_url: str, timeout: float = 10.0, api_key: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def create_order(
        self, auction_id: str, winner_id: str, seller_id: str, amount: Decimal
    ) -> str:
        payload = {
            "auction_id": auction_id,
            "buyer_id": winner_id,
            "seller_id": seller_id,
            "amount": str(amount),
        }
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    f"{self.base_url}/orders",
                    headers=self._headers(),
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status not in (200, 201):
                        error_text = await response.text()
                        raise CollaboratorError(
                            f"Order API error: {response.status} - {error_text}", auction_id
                        )
                    result = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CollaboratorError(f"Order API unreachable: {e}", auction_id)

        order_id = result.get("order_id") or result.get("id")
        if not order_id:
            raise CollaboratorError("Order API response has no order id", auction_id)
        return str(order_id)

    async def get_payment_status(self, order_id: str) -> PaymentStatus:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    f"{self.base_url}/orders/{order_id}",
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        raise CollaboratorError(f"Order API error: {response.status}")
                    result = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise CollaboratorError(f"Order API unreachable: {e}")

        return PaymentStatus.from_order_status(result.get("payment_status") or result.get("status"))


__all__ = [
    "HttpOrderService",
    "InMemoryOrderService",
    "OrderRecord",
    "OrderService",
    "PaymentStatus",
]
