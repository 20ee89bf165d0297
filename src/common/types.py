"""Common type aliases for the signaling system.

These aliases name the domain concepts shared by the relay server and the
client session layer.

Example:
    >>> from src.common.types import ParticipantID, RoomID
    >>> participant: ParticipantID = "3f9c2a7b1d04"
    >>> room: RoomID = "42"
"""

import time

type ParticipantID = str
"""Opaque, server-assigned participant identifier.

Unique per join. Identifiers are compared lexicographically to pick the
caller of a peer pair, so they must be plain strings.
"""

type RoomID = str
"""Room name chosen by the participants. Rooms exist while occupied."""

type SDP = str
"""Session description text produced or consumed by the media engine."""

type TimestampMs = int
"""Wall-clock timestamp in milliseconds since the Unix epoch."""


def now_ms() -> TimestampMs:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)
