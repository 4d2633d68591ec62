"""
Unit tests for the auction state machine.

Tests cover:
1. Lifecycle transitions and seller-only controls
2. Bid acceptance, rejection and leader tracking
3. Concurrent equal bids (exactly one wins)
4. Deadline evaluation, idempotence and sweeping
5. Single settlement emission per ended auction
6. Listener notification
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bidroom.core.auction.models import AuctionConfig, AuctionState, EndReason, EventType
from bidroom.core.auction.settlement import SettlementHandoff, SettlementOutbox
from bidroom.core.auction.state_machine import (
    SYSTEM_ACTOR,
    AuctionListener,
    AuctionStateMachine,
)
from bidroom.core.auction.validator import RejectionReason
from bidroom.core.errors import (
    AuctionNotFound,
    InvalidBidAmount,
    InvalidTransition,
    NotAuthorized,
)
from bidroom.core.orders import InMemoryOrderService
from bidroom.core.storage.store import AuctionStore


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_config(**overrides):
    values = dict(
        deal_room_id="room-1",
        seller_id="seller",
        start_price=Decimal("100"),
        minimum_increment=Decimal("10"),
        duration_minutes=30,
        invitee_ids=["alice", "bob"],
    )
    values.update(overrides)
    return AuctionConfig(**values)


class RecordingListener(AuctionListener):
    """Collects every notification in order."""

    def __init__(self):
        self.events = []

    async def on_started(self, auction):
        self.events.append(("started", auction.auction_id))

    async def on_bid_accepted(self, bid, auction):
        self.events.append(("bid", bid.bidder_id, bid.amount))

    async def on_closed(self, closed):
        self.events.append(("closed", closed.auction.state.value))

    async def on_settled(self, closed):
        self.events.append(("settled", closed.order_id))


class FailingListener(AuctionListener):
    async def on_bid_accepted(self, bid, auction):
        raise RuntimeError("listener down")


@pytest.fixture
def orders():
    return InMemoryOrderService()


@pytest.fixture
def machine(orders):
    store = AuctionStore(lock_timeout=1.0)
    handoff = SettlementHandoff(store, orders, timeout=0.5)
    outbox = SettlementOutbox(handoff, max_retries=3, backoff=0.01)
    return AuctionStateMachine(store, handoff=handoff, outbox=outbox)


async def open_auction(machine, **overrides):
    auction = await machine.create(make_config(**overrides), now=NOW, auto_start=True)
    return auction.auction_id


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """setup -> active -> ended / cancelled"""

    @pytest.mark.asyncio
    async def test_create_without_start(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        assert auction.state == AuctionState.SETUP

    @pytest.mark.asyncio
    async def test_start(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        started = await machine.start(auction.auction_id, "seller", now=NOW)

        assert started.state == AuctionState.ACTIVE
        assert started.started_at == NOW
        assert started.events[-1].event_type == EventType.STARTED

    @pytest.mark.asyncio
    async def test_only_seller_starts(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        with pytest.raises(NotAuthorized):
            await machine.start(auction.auction_id, "alice", now=NOW)
        assert machine.store.get(auction.auction_id).state == AuctionState.SETUP

    @pytest.mark.asyncio
    async def test_start_twice_is_invalid(self, machine):
        auction_id = await open_auction(machine)
        with pytest.raises(InvalidTransition):
            await machine.start(auction_id, "seller", now=NOW)

    @pytest.mark.asyncio
    async def test_end_from_setup_is_invalid(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        with pytest.raises(InvalidTransition):
            await machine.end(auction.auction_id, "seller", now=NOW)

    @pytest.mark.asyncio
    async def test_only_seller_ends(self, machine):
        auction_id = await open_auction(machine)
        with pytest.raises(NotAuthorized):
            await machine.end(auction_id, "alice", now=NOW)

    @pytest.mark.asyncio
    async def test_system_actor_may_end(self, machine):
        auction_id = await open_auction(machine)
        closed = await machine.end(auction_id, SYSTEM_ACTOR, now=NOW)
        assert closed.auction.state == AuctionState.ENDED

    @pytest.mark.asyncio
    async def test_cancel_from_setup(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        closed = await machine.cancel(auction.auction_id, "seller", now=NOW)

        assert closed.cancelled
        assert closed.settlement is None
        assert closed.auction.ended_at == NOW

    @pytest.mark.asyncio
    async def test_cancel_keeps_bids_without_winner(self, machine, orders):
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        closed = await machine.cancel(auction_id, "seller", now=NOW)

        assert closed.auction.state == AuctionState.CANCELLED
        assert len(closed.auction.bids) == 1
        assert closed.winner_id is None
        assert orders.calls == []

    @pytest.mark.asyncio
    async def test_terminal_is_immutable(self, machine):
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)
        await machine.end(auction_id, "seller", now=NOW)
        before = machine.store.get(auction_id).to_dict()

        with pytest.raises(InvalidTransition):
            await machine.end(auction_id, "seller", now=NOW)
        with pytest.raises(InvalidTransition):
            await machine.cancel(auction_id, "seller", now=NOW)
        with pytest.raises(InvalidTransition):
            await machine.start(auction_id, "seller", now=NOW)
        outcome = await machine.submit_bid(auction_id, "bob", "500", now=NOW)

        assert not outcome.accepted
        assert machine.store.get(auction_id).to_dict() == before

    @pytest.mark.asyncio
    async def test_unknown_auction(self, machine):
        with pytest.raises(AuctionNotFound):
            await machine.submit_bid("missing", "alice", "110", now=NOW)


# =============================================================================
# Bidding
# =============================================================================


class TestBidding:
    """Validate-then-append under the auction lock."""

    @pytest.mark.asyncio
    async def test_successful_bid(self, machine):
        auction_id = await open_auction(machine)
        outcome = await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        assert outcome.accepted
        assert outcome.bid.amount == Decimal("110")
        assert outcome.bid.is_highest
        assert outcome.auction.highest_bidder_id == "alice"
        assert outcome.auction.current_highest_bid == Decimal("110")
        assert outcome.auction.events[-1].event_type == EventType.BID

    @pytest.mark.asyncio
    async def test_rejection_leaves_auction_untouched(self, machine):
        auction_id = await open_auction(machine)
        before = machine.store.get(auction_id).to_dict()

        outcome = await machine.submit_bid(auction_id, "alice", "105", now=NOW)

        assert not outcome.accepted
        assert outcome.rejection.reason == RejectionReason.BID_TOO_LOW
        assert outcome.rejection.minimum_acceptable == Decimal("110")
        assert machine.store.get(auction_id).to_dict() == before

    @pytest.mark.asyncio
    async def test_seller_bid_rejected(self, machine):
        auction_id = await open_auction(machine)
        outcome = await machine.submit_bid(auction_id, "seller", "200", now=NOW)
        assert outcome.rejection.reason == RejectionReason.SELLER_CANNOT_BID

    @pytest.mark.asyncio
    async def test_bid_before_start_rejected(self, machine):
        auction = await machine.create(make_config(), now=NOW)
        outcome = await machine.submit_bid(auction.auction_id, "alice", "110", now=NOW)
        assert outcome.rejection.reason == RejectionReason.AUCTION_NOT_ACTIVE

    @pytest.mark.asyncio
    async def test_bid_after_deadline_before_sweep(self, machine):
        auction_id = await open_auction(machine)
        late = NOW + timedelta(minutes=30)

        outcome = await machine.submit_bid(auction_id, "alice", "110", now=late)

        assert outcome.rejection.reason == RejectionReason.AUCTION_EXPIRED
        assert machine.store.get(auction_id).bids == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "abc", None, "1.001", "NaN"])
    async def test_malformed_amount(self, machine, amount):
        auction_id = await open_auction(machine)
        with pytest.raises(InvalidBidAmount):
            await machine.submit_bid(auction_id, "alice", amount, now=NOW)

    @pytest.mark.asyncio
    async def test_bid_sequence_is_monotonic(self, machine):
        auction_id = await open_auction(machine)
        for bidder, amount in (("alice", "110"), ("bob", "105"), ("bob", "120"),
                               ("alice", "125"), ("alice", "130"), ("bob", "200")):
            await machine.submit_bid(auction_id, bidder, amount, now=NOW)

        auction = machine.store.get(auction_id)
        amounts = [bid.amount for bid in auction.bids]

        assert amounts == [Decimal("110"), Decimal("120"), Decimal("130"), Decimal("200")]
        assert all(a < b for a, b in zip(amounts, amounts[1:]))
        assert [bid.is_highest for bid in auction.bids].count(True) == 1
        assert auction.bids[-1].is_highest
        assert auction.highest_bidder_id == "bob"

    @pytest.mark.asyncio
    async def test_concurrent_equal_bids(self, machine):
        """Two bidders submit 120 at the same moment: exactly one wins."""
        auction_id = await open_auction(machine)

        first, second = await asyncio.gather(
            machine.submit_bid(auction_id, "alice", "120", now=NOW),
            machine.submit_bid(auction_id, "bob", "120", now=NOW),
        )

        assert sorted([first.accepted, second.accepted]) == [False, True]
        loser = first if not first.accepted else second
        assert loser.rejection.reason == RejectionReason.BID_TOO_LOW
        assert loser.rejection.minimum_acceptable == Decimal("130")

        auction = machine.store.get(auction_id)
        assert len(auction.bids) == 1
        assert auction.current_highest_bid == Decimal("120")

    @pytest.mark.asyncio
    async def test_many_concurrent_bids(self, machine):
        auction_id = await open_auction(machine, invitee_ids=[f"buyer-{i}" for i in range(20)])

        await asyncio.gather(*(
            machine.submit_bid(auction_id, f"buyer-{i}", str(110 + 10 * (i % 7)), now=NOW)
            for i in range(20)
        ))

        auction = machine.store.get(auction_id)
        amounts = [bid.amount for bid in auction.bids]
        assert all(a < b for a, b in zip(amounts, amounts[1:]))
        assert auction.current_highest_bid == amounts[-1]
        assert auction.leading_bid.bidder_id == auction.highest_bidder_id


# =============================================================================
# Deadline
# =============================================================================


class TestDeadline:
    """Time-based ending."""

    @pytest.mark.asyncio
    async def test_before_deadline_is_noop(self, machine):
        auction_id = await open_auction(machine)
        assert await machine.evaluate_deadline(auction_id, now=NOW + timedelta(minutes=29)) is None
        assert machine.store.get(auction_id).state == AuctionState.ACTIVE

    @pytest.mark.asyncio
    async def test_deadline_ends_with_winner(self, machine):
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)
        await machine.submit_bid(auction_id, "bob", "130", now=NOW)

        closed = await machine.evaluate_deadline(auction_id, now=NOW + timedelta(minutes=30))

        assert closed.reason == EndReason.TIME_EXPIRED
        assert closed.winner_id == "bob"
        assert closed.final_amount == Decimal("130")
        assert closed.auction.metadata["winner_id"] == "bob"
        assert closed.auction.metadata["final_amount"] == "130"
        assert closed.auction.metadata["end_reason"] == "time_expired"

    @pytest.mark.asyncio
    async def test_deadline_without_bids(self, machine, orders):
        auction_id = await open_auction(machine)
        closed = await machine.evaluate_deadline(auction_id, now=NOW + timedelta(minutes=31))

        assert closed.auction.state == AuctionState.ENDED
        assert closed.settlement is None
        assert closed.auction.metadata["winner_id"] is None
        assert orders.calls == []

    @pytest.mark.asyncio
    async def test_idempotent_deadline(self, machine, orders):
        """Concurrent evaluations end the auction once and settle once."""
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)
        late = NOW + timedelta(minutes=30)

        results = await asyncio.gather(*(machine.evaluate_deadline(auction_id, now=late) for _ in range(5)))

        assert len([r for r in results if r is not None]) == 1
        assert orders.calls == [auction_id]
        events = [e.event_type for e in machine.store.get(auction_id).events]
        assert events.count(EventType.ENDED) == 1
        assert events.count(EventType.SETTLEMENT_REQUESTED) == 1

    @pytest.mark.asyncio
    async def test_manual_end_after_deadline_is_time_expired(self, machine):
        auction_id = await open_auction(machine)
        closed = await machine.end(auction_id, "seller", now=NOW + timedelta(hours=1))
        assert closed.reason == EndReason.TIME_EXPIRED

    @pytest.mark.asyncio
    async def test_manual_end_early(self, machine):
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        closed = await machine.end(auction_id, "seller", now=NOW + timedelta(minutes=5))

        assert closed.reason == EndReason.MANUAL
        assert closed.winner_id == "alice"
        assert closed.auction.ended_at == NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_sweep(self, machine):
        expired = await open_auction(machine)
        await machine.create(make_config(duration_minutes=120), now=NOW, auto_start=True)

        closed = await machine.sweep(now=NOW + timedelta(minutes=45))

        assert [c.auction.auction_id for c in closed] == [expired]
        assert await machine.sweep(now=NOW + timedelta(minutes=45)) == []


# =============================================================================
# Settlement emission
# =============================================================================


class TestSettlementEmission:
    """Exactly one emission per auction that ends with a winner."""

    @pytest.mark.asyncio
    async def test_end_links_order(self, machine, orders):
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        closed = await machine.end(auction_id, "seller", now=NOW)

        assert closed.order_id is not None
        assert closed.auction.metadata["order_id"] == closed.order_id
        assert orders.orders[closed.order_id].buyer_id == "alice"
        assert orders.orders[closed.order_id].amount == Decimal("110")
        assert closed.auction.events[-1].event_type == EventType.ORDER_LINKED

    @pytest.mark.asyncio
    async def test_failed_emission_keeps_auction_ended(self, machine, orders):
        orders.fail_times = 1
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        closed = await machine.end(auction_id, "seller", now=NOW)

        assert closed.order_id is None
        assert machine.store.get(auction_id).state == AuctionState.ENDED

        # The outbox retry delivers the same request
        await machine.outbox.drain()
        assert orders.calls == [auction_id, auction_id]
        assert "order_id" in machine.store.get(auction_id).metadata
        assert len(orders.orders) == 1

    @pytest.mark.asyncio
    async def test_no_handoff_means_no_emission(self):
        machine = AuctionStateMachine(AuctionStore())
        auction = await machine.create(make_config(), now=NOW, auto_start=True)
        await machine.submit_bid(auction.auction_id, "alice", "110", now=NOW)

        closed = await machine.end(auction.auction_id, "seller", now=NOW)

        assert closed.winner_id == "alice"
        assert closed.order_id is None
        assert closed.auction.metadata["settlement_requested"] is True


# =============================================================================
# Listeners
# =============================================================================


class TestListeners:
    """Notifications run after the lock is released."""

    @pytest.mark.asyncio
    async def test_notification_order(self, machine):
        listener = RecordingListener()
        machine.add_listener(listener)

        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "105", now=NOW)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)
        closed = await machine.end(auction_id, "seller", now=NOW)

        assert listener.events == [
            ("started", auction_id),
            ("bid", "alice", Decimal("110")),
            ("closed", "ended"),
            ("settled", closed.order_id),
        ]

    @pytest.mark.asyncio
    async def test_listener_can_read_store(self, machine):
        """A listener that takes the lock again would deadlock if called inside it."""
        seen = []

        class Reader(AuctionListener):
            async def on_bid_accepted(self, bid, auction):
                async with machine.store.locked(auction.auction_id) as record:
                    seen.append(record.auction.current_highest_bid)

        machine.add_listener(Reader())
        auction_id = await open_auction(machine)
        await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        assert seen == [Decimal("110")]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_bid(self, machine):
        machine.add_listener(FailingListener())
        auction_id = await open_auction(machine)

        outcome = await machine.submit_bid(auction_id, "alice", "110", now=NOW)

        assert outcome.accepted
        assert machine.store.get(auction_id).highest_bidder_id == "alice"

    @pytest.mark.asyncio
    async def test_remove_listener(self, machine):
        listener = RecordingListener()
        machine.add_listener(listener)
        machine.remove_listener(listener)

        await open_auction(machine)
        assert listener.events == []
