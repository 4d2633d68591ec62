"""
Deadline Sweeper - recurring check that ends auctions past their deadline.

A single global loop rather than one timer per auction: every
``interval`` seconds it asks the state machine to evaluate all active
auctions whose end_at has passed. evaluate_deadline takes the same
per-auction lock as submit_bid, so the sweep is safe to run concurrently
with bidding.
"""

import asyncio
from typing import Optional

from bidroom.core.auction.state_machine import AuctionStateMachine
from bidroom.utils.logger import get_logger

logger = get_logger("scheduler")


class DeadlineSweeper:
    def __init__(self, machine: AuctionStateMachine, interval: float = 2.0):
        self.machine = machine
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Deadline sweeper started (every {self.interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Deadline sweeper stopped")

    async def run_once(self) -> int:
        """One sweep. Returns the number of auctions it ended."""
        closed = await self.machine.sweep()
        if closed:
            logger.debug(f"Sweep ended {len(closed)} auction(s)")
        return len(closed)

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                # The next tick retries
                logger.exception("Deadline sweep failed")
            await asyncio.sleep(self.interval)
