"""
bidroom - live auction negotiation engine for deal rooms.

Time-boxed, multi-party bidding on top of a buyer/seller deal room:
- Per-auction serialized bid validation and application
- Real-time fan-out of bids and lifecycle events
- Deadline sweeping and settlement handoff to an order service
"""

__version__ = "0.1.0"
