"""Relay wire protocol definitions.

Defines Pydantic models for the envelopes exchanged between participants and
the relay. Envelopes are JSON objects tagged by their ``event`` field, sent
one per WebSocket text frame.
"""

import json
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from src.common.errors import (
    EnvelopeTooLargeError,
    MalformedEnvelopeError,
    UnknownEnvelopeTypeError,
)

DEFAULT_MAX_ENVELOPE_BYTES = 64 * 1024


class JoinMessage(BaseModel):
    """Client → Server: Enter a room under a display name."""

    event: Literal["Join"] = "Join"
    name: str = Field(..., min_length=1, description="Display name (not unique)")
    room: str = Field(..., min_length=1, description="Room identifier")


class LeaveMessage(BaseModel):
    """Client → Server: Leave the current room."""

    event: Literal["Leave"] = "Leave"


class WelcomeMessage(BaseModel):
    """Server → Client: Join accepted.

    Sent to the joiner only, before the first RoomUsers broadcast, so the
    client learns its server-assigned identifier.
    """

    event: Literal["Welcome"] = "Welcome"
    id: str = Field(..., description="Identifier assigned to the joiner")
    room: str = Field(..., description="Room joined")
    name: str = Field(..., description="Display name as admitted")


class RoomUsersMessage(BaseModel):
    """Server → Client: Current room membership snapshot."""

    event: Literal["RoomUsers"] = "RoomUsers"
    room: str | None = Field(default=None, description="Room the snapshot belongs to")
    users: list[str] = Field(default_factory=list, description="Member identifiers")
    names: dict[str, str] = Field(
        default_factory=dict, description="Display name per member identifier"
    )


class OfferMessage(BaseModel):
    """Peer → Peer (via relay): Session description offer."""

    event: Literal["Offer"] = "Offer"
    target: str = Field(..., min_length=1, description="Recipient identifier")
    sdp: str = Field(..., description="Offer session description")
    sender: str | None = Field(default=None, description="Set by the relay")


class AnswerMessage(BaseModel):
    """Peer → Peer (via relay): Session description answer."""

    event: Literal["Answer"] = "Answer"
    target: str = Field(..., min_length=1, description="Recipient identifier")
    sdp: str = Field(..., description="Answer session description")
    sender: str | None = Field(default=None, description="Set by the relay")


class IceCandidateMessage(BaseModel):
    """Peer → Peer (via relay): Connectivity candidate."""

    event: Literal["IceCandidate"] = "IceCandidate"
    target: str = Field(..., min_length=1, description="Recipient identifier")
    candidate: str = Field(..., description="Candidate line (may be empty for end-of-candidates)")
    sdpMid: str | None = Field(default=None, description="Media stream identification tag")  # noqa: N815
    sdpMLineIndex: int | None = Field(default=None, ge=0, description="Media line index")  # noqa: N815
    sender: str | None = Field(default=None, description="Set by the relay")


class ChatMessage(BaseModel):
    """Chat text.

    Client → Server carries only ``content``. The relay attaches ``sender``,
    ``name`` and ``timestamp`` before fanning it out to the room.
    """

    event: Literal["Chat"] = "Chat"
    content: str = Field(..., description="Chat text")
    sender: str | None = Field(default=None, description="Sender identifier (relay-assigned)")
    name: str | None = Field(default=None, description="Sender display name (relay-assigned)")
    timestamp: int | None = Field(default=None, description="Relay time, ms since epoch")


class ErrorMessage(BaseModel):
    """Server → Client: Error notification.

    Sent when an envelope is rejected. The connection stays open.
    """

    event: Literal["Error"] = "Error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


Envelope = Annotated[
    JoinMessage
    | LeaveMessage
    | WelcomeMessage
    | RoomUsersMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | ChatMessage
    | ErrorMessage,
    Field(discriminator="event"),
]

# Union type for peer-addressed signaling envelopes
SignalingMessage = OfferMessage | AnswerMessage | IceCandidateMessage

# Union type for envelopes only the relay may emit
ServerMessage = WelcomeMessage | RoomUsersMessage | ErrorMessage

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "Join": JoinMessage,
    "Leave": LeaveMessage,
    "Welcome": WelcomeMessage,
    "RoomUsers": RoomUsersMessage,
    "Offer": OfferMessage,
    "Answer": AnswerMessage,
    "IceCandidate": IceCandidateMessage,
    "Chat": ChatMessage,
    "Error": ErrorMessage,
}

_envelope_adapter: TypeAdapter[Envelope] = TypeAdapter(Envelope)


class MessageCodec:
    """Encodes and validates relay envelopes.

    Decoding is strict about structure and size: oversized payloads are
    rejected before any parsing, unknown event tags are reported separately
    from malformed input so callers can log them distinctly.
    """

    def __init__(self, max_envelope_bytes: int = DEFAULT_MAX_ENVELOPE_BYTES) -> None:
        """Initialize codec.

        Args:
            max_envelope_bytes: Maximum accepted size of one encoded envelope
        """
        if max_envelope_bytes <= 0:
            raise ValueError(f"max_envelope_bytes must be positive, got {max_envelope_bytes}")
        self.max_envelope_bytes = max_envelope_bytes

    def encode(self, envelope: BaseModel) -> bytes:
        """Serialize an envelope to UTF-8 JSON, omitting unset optional fields."""
        return envelope.model_dump_json(exclude_none=True).encode("utf-8")

    def decode(self, data: bytes | str) -> Envelope:
        """Parse and validate one envelope.

        Args:
            data: Raw frame payload

        Returns:
            Validated envelope model

        Raises:
            EnvelopeTooLargeError: Payload exceeds max_envelope_bytes
            MalformedEnvelopeError: Invalid JSON or schema violation
            UnknownEnvelopeTypeError: Unrecognized event tag
        """
        raw = data.encode("utf-8") if isinstance(data, str) else data
        if len(raw) > self.max_envelope_bytes:
            raise EnvelopeTooLargeError(len(raw), self.max_envelope_bytes)

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEnvelopeError(f"Invalid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise MalformedEnvelopeError("Envelope must be a JSON object")

        event = payload.get("event")
        if not isinstance(event, str):
            raise MalformedEnvelopeError("Envelope is missing a string 'event' field")
        if event not in EVENT_TYPES:
            raise UnknownEnvelopeTypeError(event)

        try:
            return _envelope_adapter.validate_python(payload)
        except ValidationError as e:
            raise MalformedEnvelopeError(
                f"Invalid {event} envelope: {e.error_count()} validation error(s)"
            ) from e
