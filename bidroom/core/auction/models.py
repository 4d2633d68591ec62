"""
Auction data model - auctions, bids, participants and deal events.

An Auction owns its bid sequence, participant list and event log. Records are
plain dataclasses; every mutation goes through the store's locked handle so
the invariants below hold at every observable point:

- current_highest_bid == max(bid amounts) if bids else start_price
- highest_bidder_id is the bidder of that bid (None without bids)
- exactly one bid has is_highest once any bid exists
- no bids are appended once the auction is ended or cancelled
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Enums
# =============================================================================


class AuctionState(str, Enum):
    """Lifecycle state of an auction."""
    SETUP = "setup"           # Created, bidding window not yet open
    ACTIVE = "active"         # Accepting bids until end_at
    ENDED = "ended"           # Closed, winner resolved if any bids
    CANCELLED = "cancelled"   # Closed without settlement

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[AuctionState] = frozenset({AuctionState.ENDED, AuctionState.CANCELLED})

ALLOWED_TRANSITIONS: Dict[AuctionState, FrozenSet[AuctionState]] = {
    AuctionState.SETUP: frozenset({AuctionState.ACTIVE, AuctionState.CANCELLED}),
    AuctionState.ACTIVE: frozenset({AuctionState.ENDED, AuctionState.CANCELLED}),
    AuctionState.ENDED: frozenset(),
    AuctionState.CANCELLED: frozenset(),
}


class ParticipantRole(str, Enum):
    SELLER = "seller"
    BUYER = "buyer"


class EndReason(str, Enum):
    TIME_EXPIRED = "time_expired"
    MANUAL = "manual"


class EventType(str, Enum):
    """Deal room audit events recorded by the engine."""
    CREATED = "auction.created"
    STARTED = "auction.started"
    BID = "auction.bid"
    ENDED = "auction.ended"
    CANCELLED = "auction.cancelled"
    SETTLEMENT_REQUESTED = "auction.settlement_requested"
    ORDER_LINKED = "auction.order_linked"


# =============================================================================
# Records
# =============================================================================


@dataclass
class Participant:
    """
    A user invited to or acting within an auction.

    display_name, avatar_url and commitment_score are presentational only;
    eligibility never looks at them.
    """
    user_id: str
    role: ParticipantRole
    is_invited: bool = False
    has_joined: bool = False
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    prior_offer: Optional[Decimal] = None
    commitment_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "is_invited": self.is_invited,
            "has_joined": self.has_joined,
            "display_name": self.display_name,
            "avatar_url": self.avatar_url,
            "prior_offer": str(self.prior_offer) if self.prior_offer is not None else None,
            "commitment_score": self.commitment_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        prior = data.get("prior_offer")
        return cls(
            user_id=data["user_id"],
            role=ParticipantRole(data["role"]),
            is_invited=data.get("is_invited", False),
            has_joined=data.get("has_joined", False),
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            prior_offer=Decimal(prior) if prior is not None else None,
            commitment_score=data.get("commitment_score"),
        )


@dataclass
class Bid:
    """An accepted bid. Never mutated after acceptance except is_highest."""
    auction_id: str
    bidder_id: str
    amount: Decimal
    placed_at: datetime = field(default_factory=utcnow)
    bid_id: str = field(default_factory=_new_id)
    is_highest: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bid_id": self.bid_id,
            "auction_id": self.auction_id,
            "bidder_id": self.bidder_id,
            "amount": str(self.amount),
            "placed_at": _ts(self.placed_at),
            "is_highest": self.is_highest,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bid":
        return cls(
            bid_id=data["bid_id"],
            auction_id=data["auction_id"],
            bidder_id=data["bidder_id"],
            amount=Decimal(data["amount"]),
            placed_at=_parse_ts(data["placed_at"]),
            is_highest=data.get("is_highest", False),
        )


@dataclass
class DealEvent:
    """Immutable audit entry for the deal room the auction lives in."""
    deal_room_id: str
    actor_id: Optional[str]
    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deal_room_id": self.deal_room_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "created_at": _ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DealEvent":
        return cls(
            deal_room_id=data["deal_room_id"],
            actor_id=data.get("actor_id"),
            event_type=EventType(data["event_type"]),
            payload=data.get("payload") or {},
            created_at=_parse_ts(data["created_at"]),
        )


@dataclass
class AuctionConfig:
    """Creation input, validated by the store before anything is persisted."""
    deal_room_id: str
    seller_id: str
    start_price: Any
    minimum_increment: Any
    duration_minutes: int
    invitee_ids: List[str]
    listing_id: Optional[str] = None
    auction_id: Optional[str] = None


@dataclass
class Auction:
    """
    One auction's configuration and mutable state.

    Attributes:
        auction_id: Unique identifier
        deal_room_id: Deal room the auction is attached to
        listing_id: Listing being auctioned
        seller_id: Seller's user id
        start_price: Opening price (>= 0)
        minimum_increment: Smallest allowed raise (> 0)
        duration_minutes: Bidding window length requested at creation
        end_at: Absolute deadline, fixed at creation
        state: Lifecycle state
        current_highest_bid: Leader amount, start_price until the first bid
        highest_bidder_id: Leader's user id
        participants: Seller first, then invitees in invitation order
        bids: Append-only accepted bids
        events: Append-only deal events
        metadata: Settlement outcome (winner_id, final_amount, order_id, ...)
    """
    auction_id: str
    deal_room_id: str
    seller_id: str
    start_price: Decimal
    minimum_increment: Decimal
    duration_minutes: int
    end_at: datetime
    listing_id: Optional[str] = None
    state: AuctionState = AuctionState.SETUP
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    current_highest_bid: Decimal = Decimal("0")
    highest_bidder_id: Optional[str] = None
    participants: List[Participant] = field(default_factory=list)
    bids: List[Bid] = field(default_factory=list)
    events: List[DealEvent] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def minimum_acceptable(self) -> Decimal:
        """Smallest amount the next bid may carry."""
        return self.current_highest_bid + self.minimum_increment

    @property
    def leading_bid(self) -> Optional[Bid]:
        return self.bids[-1] if self.bids else None

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.end_at - now).total_seconds()))

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def is_invited_buyer(self, user_id: str) -> bool:
        p = self.participant(user_id)
        return p is not None and p.role == ParticipantRole.BUYER and p.is_invited

    def snapshot(self) -> "Auction":
        """Deep copy safe to hand out of the lock."""
        return copy.deepcopy(self)

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self, include_bids: bool = True, include_events: bool = True) -> Dict[str, Any]:
        data = {
            "auction_id": self.auction_id,
            "deal_room_id": self.deal_room_id,
            "listing_id": self.listing_id,
            "seller_id": self.seller_id,
            "start_price": str(self.start_price),
            "minimum_increment": str(self.minimum_increment),
            "duration_minutes": self.duration_minutes,
            "end_at": _ts(self.end_at),
            "state": self.state.value,
            "created_at": _ts(self.created_at),
            "started_at": _ts(self.started_at),
            "ended_at": _ts(self.ended_at),
            "current_highest_bid": str(self.current_highest_bid),
            "highest_bidder_id": self.highest_bidder_id,
            "participants": [p.to_dict() for p in self.participants],
            "metadata": self.metadata,
        }
        if include_bids:
            data["bids"] = [b.to_dict() for b in self.bids]
        if include_events:
            data["events"] = [e.to_dict() for e in self.events]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Auction":
        return cls(
            auction_id=data["auction_id"],
            deal_room_id=data["deal_room_id"],
            listing_id=data.get("listing_id"),
            seller_id=data["seller_id"],
            start_price=Decimal(data["start_price"]),
            minimum_increment=Decimal(data["minimum_increment"]),
            duration_minutes=data["duration_minutes"],
            end_at=_parse_ts(data["end_at"]),
            state=AuctionState(data["state"]),
            created_at=_parse_ts(data["created_at"]),
            started_at=_parse_ts(data.get("started_at")),
            ended_at=_parse_ts(data.get("ended_at")),
            current_highest_bid=Decimal(data["current_highest_bid"]),
            highest_bidder_id=data.get("highest_bidder_id"),
            participants=[Participant.from_dict(p) for p in data.get("participants", [])],
            bids=[Bid.from_dict(b) for b in data.get("bids", [])],
            events=[DealEvent.from_dict(e) for e in data.get("events", [])],
            metadata=data.get("metadata") or {},
        )


__all__ = [
    "Auction",
    "AuctionConfig",
    "AuctionState",
    "Bid",
    "DealEvent",
    "EndReason",
    "EventType",
    "Participant",
    "ParticipantRole",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "utcnow",
]
