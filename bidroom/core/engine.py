"""
Engine - wires store, validator, state machine, settlement, sweeper and channel.

Used by the API server, the CLI and the integration tests so they all run
the same assembly.
"""

from typing import Optional

from bidroom.core.auction.settlement import SettlementHandoff, SettlementOutbox
from bidroom.core.auction.state_machine import AuctionStateMachine
from bidroom.core.auction.validator import BalanceCheck, BidValidator
from bidroom.core.config import EngineConfig
from bidroom.core.orders import HttpOrderService, InMemoryOrderService, OrderService
from bidroom.core.scheduler import DeadlineSweeper
from bidroom.core.storage.sqlite_adapter import SQLiteAdapter
from bidroom.core.storage.store import AuctionStore
from bidroom.network.channel import BroadcastChannel
from bidroom.utils.logger import get_logger

logger = get_logger("engine")


class AuctionEngine:
    """All engine components for one server process."""

    def __init__(
        self,
        config: EngineConfig,
        store: AuctionStore,
        orders: OrderService,
        balance_check: Optional[BalanceCheck] = None,
    ):
        self.config = config
        self.store = store
        self.orders = orders
        self.validator = BidValidator(invite_only=config.invite_only, balance_check=balance_check)
        self.handoff = SettlementHandoff(
            store,
            orders,
            timeout=config.settlement_timeout,
            payment_status_timeout=config.payment_status_timeout,
        )
        self.outbox = SettlementOutbox(
            self.handoff,
            max_retries=config.settlement_max_retries,
            backoff=config.settlement_backoff,
        )
        self.machine = AuctionStateMachine(store, self.validator, self.handoff, self.outbox)
        self.sweeper = DeadlineSweeper(self.machine, interval=config.sweep_interval)
        self.channel = BroadcastChannel(self.machine)
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        order_service: Optional[OrderService] = None,
        balance_check: Optional[BalanceCheck] = None,
    ) -> "AuctionEngine":
        config = config or EngineConfig()
        adapter = SQLiteAdapter(config.db_path) if config.db_path else None
        store = AuctionStore(adapter, lock_timeout=config.lock_timeout)

        if order_service is None:
            if config.order_service_url:
                order_service = HttpOrderService(config.order_service_url, timeout=config.settlement_timeout)
            else:
                order_service = InMemoryOrderService()

        return cls(config, store, order_service, balance_check)

    async def start(self) -> None:
        """Start the deadline sweeper and retry settlements left over from a previous run."""
        if self._started:
            return
        self._started = True

        for request in self.handoff.unsettled():
            logger.info(f"Resuming settlement for auction {request.auction_id[:8]}")
            self.outbox.submit(request)

        await self.sweeper.start()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.sweeper.stop()
        await self.outbox.close()
        await self.channel.close_all()
        if self.store.adapter is not None:
            self.store.adapter.close()
