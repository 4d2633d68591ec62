"""
Connection - one authenticated participant on the auction channel.

A connection carries the user id resolved at handshake time; inbound bids
are always attributed to that id, never to anything the client sends.
"""

import asyncio
import uuid
from enum import Enum
from typing import List, Optional

from fastapi.websockets import WebSocket, WebSocketState

from bidroom.network.protocol import Message
from bidroom.utils.logger import get_logger

logger = get_logger("connection")


class ConnectionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


class Connection:
    """
    Transport-independent connection.

    Attributes:
        user_id: Authenticated user behind this connection
        connection_id: Unique per connection (a user may have several)
        state: OPEN until closed
    """

    def __init__(self, user_id: str, connection_id: Optional[str] = None):
        self.user_id = user_id
        self.connection_id = connection_id or str(uuid.uuid4())
        self.state = ConnectionState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    async def send(self, message: Message) -> bool:
        """
        Deliver a message.

        Returns:
            True if sent, False if the connection is closed or broke
        """
        if not self.is_open:
            return False
        try:
            await self._send_text(message.to_json())
            return True
        except Exception as e:
            logger.warning(f"Send to {self.user_id} ({self.connection_id[:8]}) failed: {e}")
            await self.close()
            return False

    async def _send_text(self, text: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        self.state = ConnectionState.CLOSED

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.user_id} {self.connection_id[:8]} {self.state.value}>"


class WebSocketConnection(Connection):
    """Connection backed by a Starlette/FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket, user_id: str):
        super().__init__(user_id)
        self.websocket = websocket

    async def _send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def close(self) -> None:
        if not self.is_open:
            return
        await super().close()
        if (self.websocket.application_state == WebSocketState.CONNECTED
                and self.websocket.client_state == WebSocketState.CONNECTED):
            try:
                await self.websocket.close()
            except RuntimeError:
                # Already closed by the peer
                pass


class QueueConnection(Connection):
    """In-process connection that queues outbound messages (demo and tests)."""

    def __init__(self, user_id: str, connection_id: Optional[str] = None):
        super().__init__(user_id, connection_id)
        self.outbox: "asyncio.Queue[Message]" = asyncio.Queue()

    async def send(self, message: Message) -> bool:
        if not self.is_open:
            return False
        await self.outbox.put(message)
        return True

    def drain(self) -> List[Message]:
        """All queued messages, oldest first."""
        messages = []
        while not self.outbox.empty():
            messages.append(self.outbox.get_nowait())
        return messages
