"""Session events surfaced to the UI layer."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventKind(Enum):
    """What happened."""

    CONNECTED = "connected"  # Join accepted, local identifier known
    DISCONNECTED = "disconnected"  # Session torn down (explicitly or on relay loss)
    USERS = "users"  # Room membership changed
    CHAT = "chat"  # Chat entry appended
    PEER_STATE = "peer_state"  # Coordinator changed state
    REMOTE_TRACK = "remote_track"  # Media track received from a peer
    PEER_ERROR = "peer_error"  # Negotiation with one peer failed
    RELAY_ERROR = "relay_error"  # Relay rejected one of our envelopes


@dataclass(frozen=True)
class SessionEvent:
    """One notification from the session layer."""

    kind: EventKind
    remote_id: str | None = None
    state: Any = None
    track: Any = None
    message: str | None = None
    payload: Any = None


type EventCallback = Callable[[SessionEvent], None]
