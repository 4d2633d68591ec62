"""
bidroom Network Module - real-time auction channel.

Connects participants to the auction state machine over WebSockets.
"""

from bidroom.network.protocol import (
    Message,
    MessageType,
    create_auction_ended,
    create_bid_accepted,
    create_bid_rejected,
    create_error,
)
from bidroom.network.connection import Connection, ConnectionState, QueueConnection, WebSocketConnection
from bidroom.network.channel import BroadcastChannel

__all__ = [
    # Protocol
    "Message",
    "MessageType",
    "create_auction_ended",
    "create_bid_accepted",
    "create_bid_rejected",
    "create_error",
    # Connections
    "Connection",
    "ConnectionState",
    "QueueConnection",
    "WebSocketConnection",
    # Channel
    "BroadcastChannel",
]
