"""
Channel Protocol - message types and JSON framing for the auction channel.

Every frame is one JSON object:

    {"type": "place_bid", "auction_id": "...", "payload": {...}, "timestamp": "..."}

Inbound (client -> server): join, leave, place_bid, ping.
Outbound (server -> client): everything else.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from bidroom.core.auction.models import Auction, Bid, utcnow
from bidroom.core.auction.validator import Rejected


class MessageType(str, Enum):
    """Types of messages on the auction channel."""
    # Inbound
    JOIN = "join"
    LEAVE = "leave"
    PLACE_BID = "place_bid"
    PING = "ping"

    # Outbound
    PONG = "pong"
    JOINED = "joined"
    LEFT = "left"
    AUCTION_STARTED = "auction_started"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"
    AUCTION_ENDED = "auction_ended"
    AUCTION_CANCELLED = "auction_cancelled"
    AUCTION_WON = "auction_won"
    ERROR = "error"


INBOUND_TYPES = frozenset({MessageType.JOIN, MessageType.LEAVE, MessageType.PLACE_BID, MessageType.PING})

# Protocol constants
MAX_MESSAGE_SIZE = 64 * 1024  # 64 KB; bids are tiny


@dataclass
class Message:
    """A channel message."""
    msg_type: MessageType
    auction_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.msg_type.value,
            "auction_id": self.auction_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Message":
        """
        Parse an inbound frame.

        Raises:
            ValueError: oversized, not JSON, not an object, or unknown type
        """
        if len(raw) > MAX_MESSAGE_SIZE:
            raise ValueError(f"Message too large ({len(raw)} bytes)")
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValueError("Message is not valid JSON")
        if not isinstance(data, dict):
            raise ValueError("Message must be a JSON object")

        try:
            msg_type = MessageType(data.get("type"))
        except ValueError:
            raise ValueError(f"Unknown message type: {data.get('type')!r}")

        auction_id = data.get("auction_id")
        if auction_id is not None and not isinstance(auction_id, str):
            raise ValueError("auction_id must be a string")

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError("payload must be an object")

        return cls(msg_type=msg_type, auction_id=auction_id, payload=payload)


# =============================================================================
# Message builders
# =============================================================================


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def auction_summary(auction: Auction, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Compact live view sent with bid updates."""
    return {
        "auction_id": auction.auction_id,
        "state": auction.state.value,
        "current_highest_bid": str(auction.current_highest_bid),
        "highest_bidder_id": auction.highest_bidder_id,
        "minimum_acceptable": str(auction.minimum_acceptable),
        "bid_count": len(auction.bids),
        "end_at": auction.end_at.isoformat(),
        "remaining_seconds": auction.remaining_seconds(now or utcnow()),
    }


def create_pong() -> Message:
    return Message(msg_type=MessageType.PONG)


def create_joined(auction: Auction) -> Message:
    return Message(
        msg_type=MessageType.JOINED,
        auction_id=auction.auction_id,
        payload={"auction": auction.to_dict(include_events=False)},
    )


def create_left(auction_id: str) -> Message:
    return Message(msg_type=MessageType.LEFT, auction_id=auction_id)


def create_auction_started(auction: Auction) -> Message:
    return Message(
        msg_type=MessageType.AUCTION_STARTED,
        auction_id=auction.auction_id,
        payload={"auction": auction.to_dict(include_events=False)},
    )


def create_bid_accepted(bid: Bid, auction: Auction) -> Message:
    """The accepted bid plus every bid's recomputed is_highest flag."""
    return Message(
        msg_type=MessageType.BID_ACCEPTED,
        auction_id=auction.auction_id,
        payload={
            "bid": bid.to_dict(),
            "bids": [{"bid_id": b.bid_id, "is_highest": b.is_highest} for b in auction.bids],
            "auction": auction_summary(auction),
        },
    )


def create_bid_rejected(auction_id: str, rejection: Rejected) -> Message:
    return Message(
        msg_type=MessageType.BID_REJECTED,
        auction_id=auction_id,
        payload=rejection.to_dict(),
    )


def create_auction_ended(
    auction_id: str,
    winner_id: Optional[str],
    final_amount: Optional[Decimal],
    reason: Optional[str] = None,
) -> Message:
    return Message(
        msg_type=MessageType.AUCTION_ENDED,
        auction_id=auction_id,
        payload={"auction_id": auction_id, "winner_id": winner_id,
                 "final_amount": _money(final_amount), "reason": reason},
    )


def create_auction_cancelled(auction_id: str) -> Message:
    return Message(
        msg_type=MessageType.AUCTION_CANCELLED,
        auction_id=auction_id,
        payload={"auction_id": auction_id},
    )


def create_auction_won(auction_id: str, final_amount: Decimal, order_id: Optional[str]) -> Message:
    return Message(
        msg_type=MessageType.AUCTION_WON,
        auction_id=auction_id,
        payload={"auction_id": auction_id, "final_amount": _money(final_amount), "order_id": order_id},
    )


def create_error(code: str, message: str, auction_id: Optional[str] = None) -> Message:
    return Message(
        msg_type=MessageType.ERROR,
        auction_id=auction_id,
        payload={"code": code, "message": message},
    )
