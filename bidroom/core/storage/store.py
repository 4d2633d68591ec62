"""
Auction Record Store - canonical auction state behind per-auction locks.

All mutations happen inside ``store.locked(auction_id)``, which serializes
writers per auction (auctions never block each other) and applies changes
to a working copy. The copy replaces the live record only when the block
exits cleanly and, if a database is configured, only after it has been
written in one SQLite transaction. An exception anywhere inside the block
therefore leaves no trace: a bid either updates the sequence, the highest
amount and the leader together, or none of them.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from bidroom.core.auction.models import (
    ALLOWED_TRANSITIONS,
    Auction,
    AuctionConfig,
    AuctionState,
    Bid,
    DealEvent,
    EventType,
    Participant,
    ParticipantRole,
    utcnow,
)
from bidroom.core.errors import (
    AuctionNotFound,
    InvalidConfiguration,
    InvalidTransition,
    LockTimeout,
)
from bidroom.core.storage.sqlite_adapter import SQLiteAdapter
from bidroom.utils.logger import get_logger
from bidroom.utils.validation import (
    MAX_INVITEES,
    parse_amount,
    unique_identifiers,
    validate_duration_minutes,
    validate_identifier,
)

logger = get_logger("store")


# =============================================================================
# Locked record handle
# =============================================================================


class AuctionRecord:
    """
    Mutable view of one auction, valid only inside ``AuctionStore.locked``.

    Exposes the defined transitions; there is no generic setter.
    """

    def __init__(self, auction: Auction):
        self.auction = auction
        self._base_bid_count = len(auction.bids)
        self._base_event_count = len(auction.events)
        self.dirty = False

    @property
    def new_bids(self) -> List[Bid]:
        return self.auction.bids[self._base_bid_count:]

    @property
    def new_events(self) -> List[DealEvent]:
        return self.auction.events[self._base_event_count:]

    def append_bid(self, bid: Bid) -> Bid:
        """Append an accepted bid and move the leader to it."""
        a = self.auction
        if a.state != AuctionState.ACTIVE:
            raise InvalidTransition(
                f"Cannot append bid: auction is {a.state.value}", a.auction_id, a.state.value
            )
        if bid.auction_id != a.auction_id:
            raise ValueError("Bid belongs to a different auction")
        if a.bids and bid.amount <= a.current_highest_bid:
            raise ValueError(f"Bid {bid.amount} does not exceed leader {a.current_highest_bid}")

        for existing in a.bids:
            existing.is_highest = False
        bid.is_highest = True
        a.bids.append(bid)
        a.current_highest_bid = bid.amount
        a.highest_bidder_id = bid.bidder_id
        self.dirty = True
        return bid

    def transition(self, new_state: AuctionState, now: datetime) -> None:
        a = self.auction
        if new_state not in ALLOWED_TRANSITIONS[a.state]:
            raise InvalidTransition(
                f"Cannot move auction from {a.state.value} to {new_state.value}",
                a.auction_id,
                a.state.value,
            )
        a.state = new_state
        if new_state == AuctionState.ACTIVE:
            a.started_at = now
        elif new_state.is_terminal:
            a.ended_at = now
        self.dirty = True

    def patch_metadata(self, patch: Dict[str, Any]) -> None:
        self.auction.metadata.update(patch)
        self.dirty = True

    def record_event(
        self,
        event_type: EventType,
        actor_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> DealEvent:
        event = DealEvent(
            deal_room_id=self.auction.deal_room_id,
            actor_id=actor_id,
            event_type=event_type,
            payload=payload or {},
            created_at=now or utcnow(),
        )
        self.auction.events.append(event)
        self.dirty = True
        return event

    def mark_joined(self, user_id: str) -> bool:
        p = self.auction.participant(user_id)
        if p is None:
            return False
        if not p.has_joined:
            p.has_joined = True
            self.dirty = True
        return True


# =============================================================================
# Store
# =============================================================================


class AuctionStore:
    """
    Holds every auction and serializes mutations per auction id.

    Args:
        adapter: Optional SQLite adapter for write-through durability
        lock_timeout: Seconds to wait for a per-auction lock
    """

    def __init__(self, adapter: Optional[SQLiteAdapter] = None, lock_timeout: float = 5.0):
        self.adapter = adapter
        self.lock_timeout = lock_timeout
        self._auctions: Dict[str, Auction] = {}
        # One lock per stored auction, bounded by _auctions. Terminal auctions keep
        # theirs: settlement bookkeeping still mutates them under the lock.
        self._locks: Dict[str, asyncio.Lock] = {}

        if adapter is not None:
            self.load()

    def load(self) -> int:
        """(Re)load every persisted auction. Returns the number loaded."""
        if self.adapter is None:
            return 0
        for document in self.adapter.load_all_auctions():
            auction = Auction.from_dict(document)
            self._auctions[auction.auction_id] = auction
        logger.info(f"Loaded {len(self._auctions)} auctions from {self.adapter.db_path}")
        return len(self._auctions)

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(self, config: AuctionConfig, now: Optional[datetime] = None) -> Auction:
        """
        Validate a creation request and store the auction in ``setup``.

        Raises:
            InvalidConfiguration: on any constraint violation
        """
        now = now or utcnow()
        auction = self._build(config, now)

        async with self._lock_for(auction.auction_id):
            if auction.auction_id in self._auctions:
                raise InvalidConfiguration(f"Auction {auction.auction_id} already exists", auction.auction_id)
            record = AuctionRecord(auction)
            record.record_event(
                EventType.CREATED,
                config.seller_id,
                {
                    "auction_id": auction.auction_id,
                    "start_price": str(auction.start_price),
                    "minimum_increment": str(auction.minimum_increment),
                    "duration_minutes": auction.duration_minutes,
                    "invitee_ids": [p.user_id for p in auction.participants if p.role == ParticipantRole.BUYER],
                },
                now,
            )
            self._commit(record)

        logger.info(f"Auction {auction.auction_id[:8]} created in room {auction.deal_room_id}: "
                    f"start={auction.start_price}, step={auction.minimum_increment}, "
                    f"ends {auction.end_at.isoformat()}")
        return auction.snapshot()

    def _build(self, config: AuctionConfig, now: datetime) -> Auction:
        for name in ("deal_room_id", "seller_id"):
            ok, err = validate_identifier(getattr(config, name), name)
            if not ok:
                raise InvalidConfiguration(err)
        if config.listing_id is not None:
            ok, err = validate_identifier(config.listing_id, "listing_id")
            if not ok:
                raise InvalidConfiguration(err)

        try:
            start_price = parse_amount(config.start_price, "start_price", allow_zero=True)
            increment = parse_amount(config.minimum_increment, "minimum_increment")
        except ValueError as e:
            raise InvalidConfiguration(str(e))

        ok, err = validate_duration_minutes(config.duration_minutes)
        if not ok:
            raise InvalidConfiguration(err)

        if not config.invitee_ids:
            raise InvalidConfiguration("invitee_ids must not be empty")
        for invitee in config.invitee_ids:
            ok, err = validate_identifier(invitee, "invitee_id")
            if not ok:
                raise InvalidConfiguration(err)
        invitees = [i for i in unique_identifiers(config.invitee_ids) if i != config.seller_id]
        if not invitees:
            raise InvalidConfiguration("invitee_ids must contain at least one buyer other than the seller")
        if len(invitees) > MAX_INVITEES:
            raise InvalidConfiguration(f"Too many invitees (max {MAX_INVITEES})")

        try:
            end_at = now + timedelta(minutes=config.duration_minutes)
        except OverflowError:
            raise InvalidConfiguration(f"duration_minutes too large: {config.duration_minutes}")

        participants = [Participant(user_id=config.seller_id, role=ParticipantRole.SELLER, is_invited=True)]
        participants += [
            Participant(user_id=user_id, role=ParticipantRole.BUYER, is_invited=True)
            for user_id in invitees
        ]

        return Auction(
            auction_id=config.auction_id or str(uuid.uuid4()),
            deal_room_id=config.deal_room_id,
            listing_id=config.listing_id,
            seller_id=config.seller_id,
            start_price=start_price,
            minimum_increment=increment,
            duration_minutes=config.duration_minutes,
            end_at=end_at,
            created_at=now,
            current_highest_bid=start_price,
            participants=participants,
        )

    # =========================================================================
    # Reads (snapshots, never live records)
    # =========================================================================

    def get(self, auction_id: str) -> Auction:
        auction = self._auctions.get(auction_id)
        if auction is None:
            raise AuctionNotFound(f"Auction {auction_id} not found", auction_id)
        return auction.snapshot()

    def exists(self, auction_id: str) -> bool:
        return auction_id in self._auctions

    def list(self, state: Optional[AuctionState] = None, deal_room_id: Optional[str] = None) -> List[Auction]:
        result = []
        for auction in self._auctions.values():
            if state is not None and auction.state != state:
                continue
            if deal_room_id is not None and auction.deal_room_id != deal_room_id:
                continue
            result.append(auction.snapshot())
        result.sort(key=lambda a: a.created_at)
        return result

    def ids_in_state(self, state: AuctionState) -> List[str]:
        return [aid for aid, a in self._auctions.items() if a.state == state]

    def expired_ids(self, now: datetime) -> List[str]:
        """Active auctions whose deadline has passed."""
        return [
            aid for aid, a in self._auctions.items()
            if a.state == AuctionState.ACTIVE and now >= a.end_at
        ]

    # =========================================================================
    # Locked mutation
    # =========================================================================

    def _lock_for(self, auction_id: str) -> "_TimedLock":
        lock = self._locks.get(auction_id)
        if lock is None:
            lock = self._locks[auction_id] = asyncio.Lock()
        return _TimedLock(lock, self.lock_timeout, auction_id)

    @asynccontextmanager
    async def locked(self, auction_id: str) -> AsyncIterator[AuctionRecord]:
        """
        Hold the auction's lock and yield a mutable working copy.

        Raises:
            AuctionNotFound: unknown auction
            LockTimeout: lock not acquired within lock_timeout
        """
        if auction_id not in self._auctions:
            raise AuctionNotFound(f"Auction {auction_id} not found", auction_id)

        async with self._lock_for(auction_id):
            record = AuctionRecord(self._auctions[auction_id].snapshot())
            yield record
            self._commit(record)

    def _commit(self, record: AuctionRecord) -> None:
        if not record.dirty:
            return
        auction = record.auction
        if self.adapter is not None:
            self.adapter.save_auction(
                auction.to_dict(include_bids=False, include_events=False),
                [b.to_dict() for b in record.new_bids],
                [e.to_dict() for e in record.new_events],
                bid_offset=record._base_bid_count,
                event_offset=record._base_event_count,
            )
        self._auctions[auction.auction_id] = auction

    # =========================================================================
    # Atomic single-step operations
    # =========================================================================

    async def append_bid(self, auction_id: str, bid: Bid) -> Auction:
        """Atomically append an already-validated bid."""
        async with self.locked(auction_id) as record:
            record.append_bid(bid)
            record.record_event(EventType.BID, bid.bidder_id,
                                {"bid_id": bid.bid_id, "amount": str(bid.amount)}, bid.placed_at)
            result = record.auction.snapshot()
        return result

    async def transition_state(
        self,
        auction_id: str,
        new_state: AuctionState,
        metadata_patch: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Auction:
        async with self.locked(auction_id) as record:
            record.transition(new_state, now or utcnow())
            if metadata_patch:
                record.patch_metadata(metadata_patch)
            result = record.auction.snapshot()
        return result

    async def patch_metadata(self, auction_id: str, patch: Dict[str, Any]) -> Auction:
        """Settlement bookkeeping; allowed in any state."""
        async with self.locked(auction_id) as record:
            record.patch_metadata(patch)
            result = record.auction.snapshot()
        return result

    async def mark_joined(self, auction_id: str, user_id: str) -> bool:
        async with self.locked(auction_id) as record:
            return record.mark_joined(user_id)


class _TimedLock:
    """asyncio.Lock acquired with a deadline; raises LockTimeout instead of waiting forever."""

    def __init__(self, lock: asyncio.Lock, timeout: float, auction_id: str):
        self._lock = lock
        self._timeout = timeout
        self._auction_id = auction_id

    async def __aenter__(self):
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout on auction {self._auction_id[:8]} after {self._timeout}s")
            raise LockTimeout(f"Auction {self._auction_id} is busy, retry", self._auction_id)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._lock.release()
        return False
