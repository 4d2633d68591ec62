"""
Broadcast Channel - real-time fan-out between auction rooms and the state machine.

Handles:
- Room membership (join/leave, one room per auction)
- Inbound bid submissions, attributed to the connection's user id
- Outbound lifecycle events, sent after the state machine released its lock
- Rejections, errors and win notices to individual users only
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Union

from bidroom.core.auction.models import Auction, Bid
from bidroom.core.auction.state_machine import AuctionClosed, AuctionListener, AuctionStateMachine, BidOutcome
from bidroom.core.errors import AuctionError, NotAuthorized
from bidroom.network.connection import Connection
from bidroom.network.protocol import (
    INBOUND_TYPES,
    Message,
    MessageType,
    create_auction_cancelled,
    create_auction_ended,
    create_auction_started,
    create_auction_won,
    create_bid_accepted,
    create_bid_rejected,
    create_error,
    create_joined,
    create_left,
    create_pong,
)
from bidroom.utils.logger import get_logger

logger = get_logger("channel")

Handler = Callable[[Connection, Message], Awaitable[None]]


class BroadcastChannel(AuctionListener):
    """
    Connects participants of each auction to the state machine.

    Registers itself as a state machine listener on construction.
    """

    def __init__(self, machine: AuctionStateMachine):
        self.machine = machine
        self.store = machine.store
        self.rooms: Dict[str, Dict[str, Connection]] = {}  # auction_id -> connection_id -> Connection
        self.connections: Dict[str, Connection] = {}  # connection_id -> Connection
        self._handlers: Dict[MessageType, Handler] = {}

        self._register_default_handlers()
        machine.add_listener(self)

    def _register_default_handlers(self) -> None:
        self._handlers[MessageType.JOIN] = self._handle_join
        self._handlers[MessageType.LEAVE] = self._handle_leave
        self._handlers[MessageType.PLACE_BID] = self._handle_place_bid
        self._handlers[MessageType.PING] = self._handle_ping

    # =========================================================================
    # Membership
    # =========================================================================

    def register(self, conn: Connection) -> None:
        self.connections[conn.connection_id] = conn

    async def join(self, conn: Connection, auction_id: str) -> Auction:
        """
        Add a connection to an auction room. Re-joining is a no-op.

        Raises:
            AuctionNotFound: unknown auction
            NotAuthorized: user is not a participant of the auction
        """
        auction = self.store.get(auction_id)
        participant = auction.participant(conn.user_id)
        if participant is None:
            raise NotAuthorized("You are not a participant of this auction", auction_id)

        self.register(conn)
        room = self.rooms.setdefault(auction_id, {})
        if conn.connection_id in room:
            return auction

        room[conn.connection_id] = conn
        if not participant.has_joined:
            await self.store.mark_joined(auction_id, conn.user_id)
            auction = self.store.get(auction_id)

        logger.info(f"{conn.user_id} joined auction {auction_id[:8]} ({len(room)} connected)")
        return auction

    async def leave(self, conn: Connection, auction_id: str) -> bool:
        room = self.rooms.get(auction_id)
        if not room or room.pop(conn.connection_id, None) is None:
            return False
        if not room:
            del self.rooms[auction_id]
        logger.info(f"{conn.user_id} left auction {auction_id[:8]}")
        return True

    async def disconnect(self, conn: Connection) -> None:
        """Drop a connection from every room it is in."""
        for auction_id in [aid for aid, room in self.rooms.items() if conn.connection_id in room]:
            await self.leave(conn, auction_id)
        self.connections.pop(conn.connection_id, None)
        await conn.close()

    def members(self, auction_id: str) -> List[Connection]:
        return list(self.rooms.get(auction_id, {}).values())

    def user_connections(self, user_id: str) -> List[Connection]:
        return [c for c in self.connections.values() if c.user_id == user_id and c.is_open]

    # =========================================================================
    # Sending
    # =========================================================================

    async def broadcast(self, auction_id: str, message: Message, exclude: Optional[str] = None) -> int:
        """
        Send a message to every connection in an auction room.

        Returns:
            Number of connections the message reached
        """
        targets = [c for c in self.members(auction_id) if c.connection_id != exclude]
        if not targets:
            return 0
        results = await asyncio.gather(*(c.send(message) for c in targets))

        # Prune connections that broke during the send
        room = self.rooms.get(auction_id)
        if room is not None:
            for conn in targets:
                if not conn.is_open:
                    room.pop(conn.connection_id, None)
        return sum(1 for ok in results if ok)

    async def send_to_user(self, user_id: str, message: Message) -> int:
        targets = self.user_connections(user_id)
        results = await asyncio.gather(*(c.send(message) for c in targets))
        return sum(1 for ok in results if ok)

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_message(self, conn: Connection, raw: Union[str, bytes]) -> None:
        """Parse and dispatch one inbound frame. Never raises for client mistakes."""
        try:
            message = Message.from_json(raw)
        except ValueError as e:
            await conn.send(create_error("BadMessage", str(e)))
            return

        if message.msg_type not in INBOUND_TYPES:
            await conn.send(create_error("BadMessage", f"{message.msg_type.value} cannot be sent by clients"))
            return

        handler = self._handlers.get(message.msg_type)
        try:
            await handler(conn, message)
        except AuctionError as e:
            await conn.send(create_error(e.code, e.message, message.auction_id))

    async def _require_auction_id(self, conn: Connection, message: Message) -> Optional[str]:
        if not message.auction_id:
            await conn.send(create_error("BadMessage", f"{message.msg_type.value} requires auction_id"))
            return None
        return message.auction_id

    async def _handle_join(self, conn: Connection, message: Message) -> None:
        auction_id = await self._require_auction_id(conn, message)
        if auction_id:
            auction = await self.join(conn, auction_id)
            await conn.send(create_joined(auction))

    async def _handle_leave(self, conn: Connection, message: Message) -> None:
        auction_id = await self._require_auction_id(conn, message)
        if auction_id:
            await self.leave(conn, auction_id)
            await conn.send(create_left(auction_id))

    async def _handle_place_bid(self, conn: Connection, message: Message) -> None:
        auction_id = await self._require_auction_id(conn, message)
        if auction_id:
            await self.place_bid(conn, auction_id, message.payload.get("amount"))

    async def _handle_ping(self, conn: Connection, message: Message) -> None:
        await conn.send(create_pong())

    async def place_bid(self, conn: Connection, auction_id: str, amount) -> BidOutcome:
        """
        Submit a bid as the connection's user.

        Accepted bids reach the room through on_bid_accepted; a submitter
        outside the room gets its own copy. Rejections go to the submitter only.
        """
        outcome = await self.machine.submit_bid(auction_id, conn.user_id, amount)
        if not outcome.accepted:
            await conn.send(create_bid_rejected(auction_id, outcome.rejection))
        elif conn.connection_id not in self.rooms.get(auction_id, {}):
            await conn.send(create_bid_accepted(outcome.bid, outcome.auction))
        return outcome

    # =========================================================================
    # State machine notifications
    # =========================================================================

    async def on_started(self, auction: Auction) -> None:
        await self.broadcast(auction.auction_id, create_auction_started(auction))

    async def on_bid_accepted(self, bid: Bid, auction: Auction) -> None:
        sent = await self.broadcast(auction.auction_id, create_bid_accepted(bid, auction))
        logger.debug(f"bid_accepted on {auction.auction_id[:8]} sent to {sent} connection(s)")

    async def on_closed(self, closed: AuctionClosed) -> None:
        auction_id = closed.auction.auction_id
        if closed.cancelled:
            await self.broadcast(auction_id, create_auction_cancelled(auction_id))
            return
        await self.broadcast(
            auction_id,
            create_auction_ended(
                auction_id,
                closed.winner_id,
                closed.final_amount,
                closed.reason.value if closed.reason else None,
            ),
        )

    async def on_settled(self, closed: AuctionClosed) -> None:
        await self.send_to_user(
            closed.winner_id,
            create_auction_won(closed.auction.auction_id, closed.final_amount, closed.order_id),
        )

    async def close_all(self) -> None:
        for conn in list(self.connections.values()):
            await conn.close()
        self.connections.clear()
        self.rooms.clear()
