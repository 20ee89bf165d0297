"""Error taxonomy for the relay and the client session layer.

Propagation policy:
- ProtocolError: bad envelope from one participant. Logged and dropped,
  the connection stays open.
- RoutingMiss: signaling target not in the sender's room. Expected race,
  dropped silently.
- MediaAcquisitionError: local capture unavailable. Fails initialize().
- NegotiationError: media engine rejected a description or candidate.
  Closes one peer coordinator only.
- TransportError: relay connection lost or failed to open. Fatal to the
  whole client session.
"""


class SignalingError(Exception):
    """Base class for all signaling errors."""


class ProtocolError(SignalingError):
    """Invalid envelope received on a connection."""


class DecodeError(ProtocolError):
    """Envelope could not be decoded.

    Attributes:
        kind: Machine-readable failure kind (malformed, unknown_type, too_large)
    """

    kind = "malformed"

    @property
    def code(self) -> str:
        """Wire error code sent back to the offending participant."""
        return self.kind.upper()


class MalformedEnvelopeError(DecodeError):
    """Envelope is not valid JSON or does not match its schema."""

    kind = "malformed"


class UnknownEnvelopeTypeError(DecodeError):
    """Envelope carries an unrecognized event tag."""

    kind = "unknown_type"

    def __init__(self, event: str) -> None:
        super().__init__(f"Unknown envelope event: {event!r}")
        self.event = event


class EnvelopeTooLargeError(DecodeError):
    """Envelope exceeds the configured maximum size."""

    kind = "too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Envelope of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class RoutingMiss(SignalingError):
    """Signaling target is not present in the sender's room."""

    def __init__(self, room: str, target: str) -> None:
        super().__init__(f"Target {target!r} not in room {room!r}")
        self.room = room
        self.target = target


class MediaAcquisitionError(SignalingError):
    """Local media capture could not be acquired."""


class NegotiationError(SignalingError):
    """Media engine rejected a session description or ICE candidate."""


class TransportError(SignalingError):
    """Relay connection failed to open or was lost."""
