"""Client side of the relay connection.

A RelayLink carries encoded envelopes to and from the relay. The session
facade only depends on the abstract interface; WebSocketRelayLink is the
websockets-based implementation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import websockets
from pydantic import BaseModel
from websockets.asyncio.client import ClientConnection
from websockets.protocol import State

from src.common.errors import DecodeError, TransportError
from src.relay.protocol import Envelope, MessageCodec

logger = logging.getLogger(__name__)


class RelayLink(ABC):
    """Ordered, reliable envelope channel to the relay."""

    @abstractmethod
    async def send(self, envelope: BaseModel) -> None:
        """Send one envelope.

        Raises:
            TransportError: If the link is closed or the send fails
        """
        pass

    @abstractmethod
    async def receive(self) -> AsyncIterator[Envelope]:
        """Yield decoded envelopes in arrival order until the link closes.

        Undecodable frames are logged and skipped.

        Raises:
            TransportError: If the link drops abnormally
        """
        if False:
            yield

    @abstractmethod
    async def close(self) -> None:
        """Close the link. Idempotent."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the link is usable."""
        pass


class WebSocketRelayLink(RelayLink):
    """RelayLink over a websockets client connection."""

    def __init__(self, websocket: ClientConnection, codec: MessageCodec) -> None:
        self._websocket = websocket
        self._codec = codec

    @classmethod
    async def open(
        cls, url: str, codec: MessageCodec | None = None, timeout: float = 10.0
    ) -> "WebSocketRelayLink":
        """Connect to the relay.

        Raises:
            TransportError: If the connection cannot be opened in time
        """
        try:
            websocket = await asyncio.wait_for(websockets.connect(url), timeout=timeout)
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Cannot connect to relay at {url}: {e}") from e

        logger.info("Connected to relay", extra={"url": url})
        return cls(websocket, codec or MessageCodec())

    @property
    def is_open(self) -> bool:
        return self._websocket.state == State.OPEN

    async def send(self, envelope: BaseModel) -> None:
        try:
            await self._websocket.send(self._codec.encode(envelope).decode("utf-8"))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Relay connection closed: {e}") from e

    async def receive(self) -> AsyncIterator[Envelope]:
        try:
            async for raw in self._websocket:
                try:
                    yield self._codec.decode(raw)
                except DecodeError as e:
                    logger.warning(
                        "Discarding undecodable envelope from relay",
                        extra={"code": e.code, "error": str(e)},
                    )
        except websockets.exceptions.ConnectionClosedError as e:
            raise TransportError(f"Relay connection lost: {e}") from e

    async def close(self) -> None:
        await self._websocket.close()
