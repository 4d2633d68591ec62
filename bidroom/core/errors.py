"""
Error taxonomy for the auction engine.

Bid rejections are deliberately absent: they are expected outcomes and are
returned as values by the validator (see validator.Rejected), not raised.
"""

from typing import Optional


class AuctionError(Exception):
    """Base class for all engine errors."""

    code = "AuctionError"

    def __init__(self, message: str, auction_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.auction_id = auction_id


class InvalidConfiguration(AuctionError):
    """Malformed auction creation input or engine settings. Never persisted."""

    code = "InvalidConfiguration"


class InvalidBidAmount(AuctionError):
    """Bid amount is not a positive, finite money value."""

    code = "InvalidAmount"


class AuctionNotFound(AuctionError):
    code = "NotFound"


class InvalidTransition(AuctionError):
    """Lifecycle operation not allowed from the current state.

    Callers should treat this as a safe no-op signal, not a crash.
    """

    code = "InvalidTransition"

    def __init__(self, message: str, auction_id: Optional[str] = None, state: Optional[str] = None):
        super().__init__(message, auction_id)
        self.state = state


class NotAuthorized(AuctionError):
    """Actor is not allowed to perform the operation (e.g. non-seller ending)."""

    code = "NotAuthorized"


class LockTimeout(AuctionError):
    """Per-auction lock could not be acquired in time. Transient; retry."""

    code = "LockTimeout"


class CollaboratorError(AuctionError):
    """An external collaborator (orders, payments) failed."""

    code = "CollaboratorError"


class CollaboratorTimeout(CollaboratorError):
    code = "CollaboratorTimeout"
