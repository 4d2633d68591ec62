"""
Bid Validator - pure accept/reject decision for a bid attempt.

Rules are evaluated in order and the first failing rule wins:

1. auction is active                          -> AuctionNotActive
2. now < end_at                               -> AuctionExpired
3. bidder is not the seller                   -> SellerCannotBid
4. bidder is an invited buyer (invite-only)   -> NotInvited
5. amount >= current_highest + increment      -> BidTooLow
6. optional balance check passes              -> InsufficientFunds

No side effects: the same inputs always produce the same result, so the
validator can be exercised without any store, lock or clock.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional, Union

from bidroom.core.auction.models import Auction, AuctionState
from bidroom.utils.logger import get_logger

logger = get_logger("validator")

# (bidder_id, amount) -> True if the bidder can cover the amount
BalanceCheck = Callable[[str, Decimal], bool]


class RejectionReason(str, Enum):
    AUCTION_NOT_ACTIVE = "AuctionNotActive"
    AUCTION_EXPIRED = "AuctionExpired"
    SELLER_CANNOT_BID = "SellerCannotBid"
    NOT_INVITED = "NotInvited"
    BID_TOO_LOW = "BidTooLow"
    INSUFFICIENT_FUNDS = "InsufficientFunds"


@dataclass(frozen=True)
class Accepted:
    amount: Decimal

    @property
    def accepted(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    """
    A refused bid attempt.

    minimum_acceptable is always filled in so a client can offer an
    immediate retry at the right amount.
    """
    reason: RejectionReason
    message: str
    minimum_acceptable: Optional[Decimal] = None

    @property
    def accepted(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "message": self.message,
            "minimum_acceptable": str(self.minimum_acceptable) if self.minimum_acceptable is not None else None,
        }


ValidationResult = Union[Accepted, Rejected]


def _closed_message(auction: Auction) -> str:
    if auction.state == AuctionState.CANCELLED:
        return "Auction was cancelled by the seller"
    if auction.state == AuctionState.ENDED:
        if auction.highest_bidder_id:
            return f"Auction already ended: another bidder won at {auction.current_highest_bid}"
        return "Auction already ended without a winner"
    return f"Auction has not started yet (state: {auction.state.value})"


def validate_bid(
    auction: Auction,
    bidder_id: str,
    amount: Decimal,
    now: datetime,
    invite_only: bool = True,
    balance_check: Optional[BalanceCheck] = None,
) -> ValidationResult:
    """
    Decide whether a bid attempt may be applied to the auction.

    Args:
        auction: Current auction state (read only)
        bidder_id: Authenticated bidder
        amount: Offered amount
        now: Time of the attempt
        invite_only: Require the bidder to be an invited buyer
        balance_check: Optional funds predicate owned by the payments side

    Returns:
        Accepted or Rejected(reason)
    """
    minimum = auction.minimum_acceptable

    if auction.state != AuctionState.ACTIVE:
        return Rejected(RejectionReason.AUCTION_NOT_ACTIVE, _closed_message(auction), minimum)

    # A deadline that passed before the sweep noticed is still a deadline.
    if now >= auction.end_at:
        return Rejected(
            RejectionReason.AUCTION_EXPIRED,
            f"Bidding closed at {auction.end_at.isoformat()}; your bid arrived too late",
            minimum,
        )

    if bidder_id == auction.seller_id:
        return Rejected(RejectionReason.SELLER_CANNOT_BID, "Sellers cannot bid on their own auction", minimum)

    if invite_only and not auction.is_invited_buyer(bidder_id):
        return Rejected(RejectionReason.NOT_INVITED, "You are not invited to this auction", minimum)

    if amount < minimum:
        return Rejected(RejectionReason.BID_TOO_LOW, f"Bid must be at least {minimum}", minimum)

    if balance_check is not None and not balance_check(bidder_id, amount):
        return Rejected(
            RejectionReason.INSUFFICIENT_FUNDS,
            f"Available balance does not cover a bid of {amount}",
            minimum,
        )

    return Accepted(amount=amount)


class BidValidator:
    """Validator bound to engine settings. Stateless apart from its options."""

    def __init__(self, invite_only: bool = True, balance_check: Optional[BalanceCheck] = None):
        self.invite_only = invite_only
        self.balance_check = balance_check

    def validate(self, auction: Auction, bidder_id: str, amount: Decimal, now: datetime) -> ValidationResult:
        result = validate_bid(
            auction,
            bidder_id,
            amount,
            now,
            invite_only=self.invite_only,
            balance_check=self.balance_check,
        )
        if not result.accepted:
            logger.debug(f"Bid rejected on {auction.auction_id[:8]}: bidder={bidder_id}, "
                         f"amount={amount}, reason={result.reason.value}")
        return result


__all__ = [
    "Accepted",
    "BalanceCheck",
    "BidValidator",
    "Rejected",
    "RejectionReason",
    "ValidationResult",
    "validate_bid",
]
