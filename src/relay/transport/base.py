"""Base transport abstraction for participant connections.

Defines the interface that relay transport implementations must implement so
the relay engine can route envelopes without knowing the socket library.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class ParticipantConnection(ABC):
    """Base class for transport-specific participant connections.

    Sends are non-blocking: each connection owns a bounded outbound buffer.
    A connection whose buffer overflows is closed rather than allowed to
    apply back-pressure to the relay.
    """

    @abstractmethod
    def send(self, data: bytes) -> bool:
        """Queue one encoded envelope for delivery.

        Args:
            data: Encoded envelope

        Returns:
            True if queued, False if the connection is closed or overflowed
        """
        pass

    @abstractmethod
    async def receive(self) -> AsyncIterator[bytes | str]:
        """Receive raw frames from the participant.

        Yields frames until the connection closes.

        Yields:
            Raw frame payload
        """
        # Using yield to make this an async generator
        if False:
            yield b""

    @abstractmethod
    async def close(self, reason: str = "closed") -> None:
        """Close the connection and release its resources."""
        pass

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier for logging and tracking."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a listening server and hands out a
    ParticipantConnection per accepted client.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close all live connections."""
        pass

    @abstractmethod
    async def accept_connection(self) -> ParticipantConnection:
        """Block until a new participant connects.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
