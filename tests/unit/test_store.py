"""
Unit tests for the auction record store.

Tests cover:
1. Creation input validation (InvalidConfiguration)
2. Participant seeding
3. Locked, all-or-nothing mutation
4. Per-auction lock isolation and timeouts
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from bidroom.core.auction.models import AuctionConfig, AuctionState, Bid, EventType, ParticipantRole
from bidroom.core.errors import AuctionNotFound, InvalidConfiguration, InvalidTransition, LockTimeout
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


async def make_active(store, **overrides):
    auction = await store.create(make_config(**overrides), NOW)
    return await store.transition_state(auction.auction_id, AuctionState.ACTIVE, now=NOW)


@pytest.fixture
def store():
    return AuctionStore(lock_timeout=0.2)


# =============================================================================
# Creation
# =============================================================================


class TestCreate:
    """Tests for auction creation."""

    @pytest.mark.asyncio
    async def test_create_in_setup(self, store):
        auction = await store.create(make_config(), NOW)

        assert auction.state == AuctionState.SETUP
        assert auction.current_highest_bid == Decimal("100")
        assert auction.highest_bidder_id is None
        assert auction.end_at == NOW + timedelta(minutes=30)
        assert auction.bids == []

    @pytest.mark.asyncio
    async def test_create_records_event(self, store):
        auction = await store.create(make_config(), NOW)

        assert [e.event_type for e in auction.events] == [EventType.CREATED]
        assert auction.events[0].actor_id == "seller"
        assert auction.events[0].payload["invitee_ids"] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_participants_seeded(self, store):
        """Seller first, then unique invitees; the seller is never a buyer."""
        auction = await store.create(make_config(invitee_ids=["alice", "bob", "alice", "seller"]), NOW)

        assert [(p.user_id, p.role) for p in auction.participants] == [
            ("seller", ParticipantRole.SELLER),
            ("alice", ParticipantRole.BUYER),
            ("bob", ParticipantRole.BUYER),
        ]
        assert all(p.is_invited and not p.has_joined for p in auction.participants)

    @pytest.mark.asyncio
    async def test_any_positive_duration(self, store):
        auction = await store.create(make_config(duration_minutes=7), NOW)
        assert auction.end_at == NOW + timedelta(minutes=7)

    @pytest.mark.asyncio
    async def test_zero_start_price_allowed(self, store):
        auction = await store.create(make_config(start_price=Decimal("0")), NOW)
        assert auction.minimum_acceptable == Decimal("10")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"invitee_ids": []},
        {"invitee_ids": ["seller"]},
        {"start_price": Decimal("-1")},
        {"minimum_increment": Decimal("0")},
        {"minimum_increment": Decimal("-5")},
        {"duration_minutes": 0},
        {"duration_minutes": -30},
        {"duration_minutes": 15.5},
        {"duration_minutes": 10**10},
        {"duration_minutes": 10**15},
        {"start_price": "abc"},
        {"deal_room_id": ""},
        {"invitee_ids": ["alice", ""]},
    ])
    async def test_invalid_configuration(self, store, overrides):
        with pytest.raises(InvalidConfiguration):
            await store.create(make_config(**overrides), NOW)
        assert store.list() == []

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.create(make_config(auction_id="fixed"), NOW)
        with pytest.raises(InvalidConfiguration):
            await store.create(make_config(auction_id="fixed"), NOW)


# =============================================================================
# Reads
# =============================================================================


class TestReads:
    """Reads return snapshots, never live records."""

    @pytest.mark.asyncio
    async def test_get_unknown(self, store):
        with pytest.raises(AuctionNotFound):
            store.get("missing")

    @pytest.mark.asyncio
    async def test_exists(self, store):
        auction = await store.create(make_config(), NOW)

        assert store.exists(auction.auction_id)
        assert not store.exists("missing")

    @pytest.mark.asyncio
    async def test_snapshot_is_detached(self, store):
        auction = await store.create(make_config(), NOW)
        auction.current_highest_bid = Decimal("999")
        auction.participants.clear()

        fresh = store.get(auction.auction_id)
        assert fresh.current_highest_bid == Decimal("100")
        assert len(fresh.participants) == 3

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        a = await store.create(make_config(deal_room_id="room-a"), NOW)
        await store.create(make_config(deal_room_id="room-b"), NOW)
        await store.transition_state(a.auction_id, AuctionState.ACTIVE, now=NOW)

        assert [x.auction_id for x in store.list(deal_room_id="room-a")] == [a.auction_id]
        assert [x.auction_id for x in store.list(state=AuctionState.ACTIVE)] == [a.auction_id]
        assert len(store.list()) == 2

    @pytest.mark.asyncio
    async def test_expired_ids(self, store):
        active = await make_active(store)
        await store.create(make_config(), NOW)

        assert store.expired_ids(NOW) == []
        assert store.expired_ids(active.end_at) == [active.auction_id]


# =============================================================================
# Mutation
# =============================================================================


class TestMutation:
    """Appends and transitions."""

    @pytest.mark.asyncio
    async def test_append_bid_updates_leader(self, store):
        auction = await make_active(store)
        aid = auction.auction_id

        await store.append_bid(aid, Bid(aid, "alice", Decimal("110"), placed_at=NOW))
        result = await store.append_bid(aid, Bid(aid, "bob", Decimal("130"), placed_at=NOW))

        assert result.current_highest_bid == Decimal("130")
        assert result.highest_bidder_id == "bob"
        assert [b.is_highest for b in result.bids] == [False, True]

    @pytest.mark.asyncio
    async def test_append_to_setup_rejected(self, store):
        auction = await store.create(make_config(), NOW)
        aid = auction.auction_id
        with pytest.raises(InvalidTransition):
            await store.append_bid(aid, Bid(aid, "alice", Decimal("110")))

    @pytest.mark.asyncio
    async def test_append_non_increasing_rejected(self, store):
        auction = await make_active(store)
        aid = auction.auction_id
        await store.append_bid(aid, Bid(aid, "alice", Decimal("110")))

        with pytest.raises(ValueError):
            await store.append_bid(aid, Bid(aid, "bob", Decimal("110")))
        assert len(store.get(aid).bids) == 1

    @pytest.mark.asyncio
    async def test_terminal_states_have_no_exits(self, store):
        auction = await make_active(store)
        aid = auction.auction_id
        await store.transition_state(aid, AuctionState.ENDED, {"winner_id": None}, now=NOW)

        for target in AuctionState:
            with pytest.raises(InvalidTransition):
                await store.transition_state(aid, target, now=NOW)

    @pytest.mark.asyncio
    async def test_failed_block_leaves_no_trace(self, store):
        """An exception inside locked() discards every change made in the block."""
        auction = await make_active(store)
        aid = auction.auction_id

        with pytest.raises(RuntimeError):
            async with store.locked(aid) as record:
                record.append_bid(Bid(aid, "alice", Decimal("110")))
                record.patch_metadata({"note": "half-done"})
                raise RuntimeError("boom")

        after = store.get(aid)
        assert after.bids == []
        assert after.current_highest_bid == Decimal("100")
        assert after.highest_bidder_id is None
        assert "note" not in after.metadata

    @pytest.mark.asyncio
    async def test_mark_joined(self, store):
        auction = await store.create(make_config(), NOW)

        assert await store.mark_joined(auction.auction_id, "alice")
        assert not await store.mark_joined(auction.auction_id, "mallory")
        assert store.get(auction.auction_id).participant("alice").has_joined


# =============================================================================
# Locking
# =============================================================================


class TestLocking:
    """Per-auction serialization."""

    @pytest.mark.asyncio
    async def test_lock_timeout(self, store):
        auction = await store.create(make_config(), NOW)
        aid = auction.auction_id

        async with store.locked(aid):
            with pytest.raises(LockTimeout):
                async with store.locked(aid):
                    pass

    @pytest.mark.asyncio
    async def test_other_auctions_not_blocked(self, store):
        first = await store.create(make_config(), NOW)
        second = await store.create(make_config(), NOW)

        async with store.locked(first.auction_id):
            async with store.locked(second.auction_id) as record:
                record.patch_metadata({"touched": True})

        assert store.get(second.auction_id).metadata["touched"] is True

    @pytest.mark.asyncio
    async def test_lock_released_after_error(self, store):
        auction = await store.create(make_config(), NOW)
        aid = auction.auction_id

        with pytest.raises(RuntimeError):
            async with store.locked(aid):
                raise RuntimeError("boom")

        async with store.locked(aid) as record:
            record.patch_metadata({"ok": True})
        assert store.get(aid).metadata["ok"] is True

    @pytest.mark.asyncio
    async def test_writers_serialized(self, store):
        auction = await store.create(make_config(), NOW)
        aid = auction.auction_id
        order = []

        async def writer(name):
            async with store.locked(aid):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(writer("a"), writer("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_locks_only_for_stored_auctions(self, store):
        """Unknown ids never allocate a lock; ended auctions keep theirs for bookkeeping."""
        auction = await store.create(make_config(), NOW)
        aid = auction.auction_id
        await store.transition_state(aid, AuctionState.ACTIVE, now=NOW)
        await store.transition_state(aid, AuctionState.ENDED, now=NOW)

        for missing in ("missing-1", "missing-2"):
            with pytest.raises(AuctionNotFound):
                async with store.locked(missing):
                    pass

        assert set(store._locks) == {aid}
        await store.patch_metadata(aid, {"payment_complete": True})
        assert store.get(aid).metadata["payment_complete"] is True
