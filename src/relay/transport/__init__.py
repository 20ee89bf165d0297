"""Transport layer for relay participant connections.

Provides abstraction over the socket library used to accept participants.
"""

from src.relay.transport.base import ParticipantConnection, Transport
from src.relay.transport.websocket_transport import (
    WebSocketConnection,
    WebSocketTransport,
)

__all__ = [
    "ParticipantConnection",
    "Transport",
    "WebSocketConnection",
    "WebSocketTransport",
]
