"""
Auction Module.

- Data model (auctions, bids, participants, deal events)
- Bid validation
- Lifecycle state machine (bidroom.core.auction.state_machine)
- Settlement handoff (bidroom.core.auction.settlement)
"""

from bidroom.core.auction.models import (
    Auction,
    AuctionConfig,
    AuctionState,
    Bid,
    DealEvent,
    EndReason,
    EventType,
    Participant,
    ParticipantRole,
)
from bidroom.core.auction.validator import (
    Accepted,
    BidValidator,
    Rejected,
    RejectionReason,
    validate_bid,
)

__all__ = [
    # Models
    "Auction",
    "AuctionConfig",
    "AuctionState",
    "Bid",
    "DealEvent",
    "EndReason",
    "EventType",
    "Participant",
    "ParticipantRole",
    # Validation
    "Accepted",
    "BidValidator",
    "Rejected",
    "RejectionReason",
    "validate_bid",
]
