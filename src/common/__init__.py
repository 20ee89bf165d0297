"""Common utilities and type definitions.

This package provides the error taxonomy and shared type aliases used by
both the relay server and the client session layer.
"""

from src.common.errors import (
    DecodeError,
    EnvelopeTooLargeError,
    MalformedEnvelopeError,
    MediaAcquisitionError,
    NegotiationError,
    ProtocolError,
    RoutingMiss,
    SignalingError,
    TransportError,
    UnknownEnvelopeTypeError,
)
from src.common.types import SDP, ParticipantID, RoomID, TimestampMs, now_ms

__all__ = [
    "DecodeError",
    "EnvelopeTooLargeError",
    "MalformedEnvelopeError",
    "MediaAcquisitionError",
    "NegotiationError",
    "ParticipantID",
    "ProtocolError",
    "RoomID",
    "RoutingMiss",
    "SDP",
    "SignalingError",
    "TimestampMs",
    "TransportError",
    "UnknownEnvelopeTypeError",
    "now_ms",
]
