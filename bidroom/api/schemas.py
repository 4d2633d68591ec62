"""
Request / response schemas for the HTTP API.

Money travels as decimal strings in responses so clients never see float
rounding; requests accept numbers or strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bidroom.core.auction.models import Auction, Bid, DealEvent


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CreateAuctionRequest(BaseModel):
    deal_room_id: str
    start_price: Decimal
    minimum_increment: Decimal
    duration_minutes: int
    invitee_ids: List[str]
    listing_id: Optional[str] = None
    auto_start: bool = True


class PlaceBidRequest(BaseModel):
    amount: Decimal


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ParticipantResponse(BaseModel):
    user_id: str
    role: str
    is_invited: bool
    has_joined: bool
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    prior_offer: Optional[str] = None
    commitment_score: Optional[float] = None


class BidResponse(BaseModel):
    bid_id: str
    auction_id: str
    bidder_id: str
    amount: str
    placed_at: datetime
    is_highest: bool

    @classmethod
    def from_bid(cls, bid: Bid) -> "BidResponse":
        return cls(**bid.to_dict())


class DealEventResponse(BaseModel):
    deal_room_id: str
    actor_id: Optional[str] = None
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_event(cls, event: DealEvent) -> "DealEventResponse":
        return cls(**event.to_dict())


class AuctionResponse(BaseModel):
    auction_id: str
    deal_room_id: str
    listing_id: Optional[str] = None
    seller_id: str
    start_price: str
    minimum_increment: str
    duration_minutes: int
    end_at: datetime
    state: str
    created_at: datetime
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    current_highest_bid: str
    highest_bidder_id: Optional[str] = None
    minimum_acceptable: str
    participants: List[ParticipantResponse] = []
    bids: List[BidResponse] = []
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_auction(cls, auction: Auction) -> "AuctionResponse":
        return cls(
            **auction.to_dict(include_events=False),
            minimum_acceptable=str(auction.minimum_acceptable),
        )


class BidPlacedResponse(BaseModel):
    bid: BidResponse
    auction: AuctionResponse


class BidRejectedResponse(BaseModel):
    reason: str
    message: str
    minimum_acceptable: Optional[str] = None


class PaymentResponse(BaseModel):
    auction_id: str
    order_id: Optional[str] = None
    payment_status: Optional[str] = None
    payment_complete: bool


class ErrorResponse(BaseModel):
    error: str
    message: str
