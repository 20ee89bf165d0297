"""Authoritative room membership for the relay.

The Roster owns every Room and Participant. All operations run under a
single re-entrant lock, so a join or leave and the membership snapshot
broadcast for it are serialized against every other roster mutation.
"""

import logging
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from src.common.errors import RoutingMiss
from src.common.types import ParticipantID, RoomID
from src.relay.transport.base import ParticipantConnection

logger = logging.getLogger(__name__)


def generate_participant_id() -> ParticipantID:
    """Generate a fresh opaque participant identifier."""
    return uuid.uuid4().hex[:12]


@dataclass(eq=False)
class Participant:
    """One connected, named occupant of a room."""

    participant_id: ParticipantID
    name: str
    room: RoomID
    connection: ParticipantConnection
    joined_at: float = field(default_factory=time.monotonic)


@dataclass
class Room:
    """A named room and its participants, keyed by identifier in join order."""

    room_id: RoomID
    participants: dict[ParticipantID, Participant] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.participants


class Roster:
    """Rooms → participants table shared by all connection workers.

    Rooms are created lazily on first join and discarded when their last
    participant leaves. A connection owns at most one participant.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rooms: dict[RoomID, Room] = {}
        self._participants: dict[ParticipantID, Participant] = {}
        self._by_connection: dict[str, ParticipantID] = {}

    @contextmanager
    def locked(self) -> Iterator["Roster"]:
        """Hold the roster lock across several operations.

        Used to pair a mutation with the snapshot broadcast for it.
        """
        with self._lock:
            yield self

    def join(self, connection: ParticipantConnection, name: str, room: RoomID) -> Participant:
        """Admit a participant into a room.

        Args:
            connection: Connection the participant speaks through
            name: Display name (not required to be unique)
            room: Room identifier

        Returns:
            The newly created participant

        Raises:
            ValueError: If the connection already owns a participant
        """
        with self._lock:
            if connection.connection_id in self._by_connection:
                raise ValueError(
                    f"Connection {connection.connection_id} already joined as "
                    f"{self._by_connection[connection.connection_id]}"
                )

            participant_id = generate_participant_id()
            while participant_id in self._participants:
                participant_id = generate_participant_id()

            participant = Participant(
                participant_id=participant_id,
                name=name,
                room=room,
                connection=connection,
            )

            target_room = self._rooms.get(room)
            if target_room is None:
                target_room = Room(room_id=room)
                self._rooms[room] = target_room
                logger.info("Room created", extra={"room": room})

            target_room.participants[participant_id] = participant
            self._participants[participant_id] = participant
            self._by_connection[connection.connection_id] = participant_id

        logger.info(
            "Participant joined",
            extra={"participant_id": participant_id, "room": room, "participant_name": name},
        )
        return participant

    def leave(self, participant_id: ParticipantID) -> Participant | None:
        """Remove a participant from its room.

        Idempotent: unknown or already-departed identifiers are a no-op.

        Returns:
            The removed participant, or None if nothing was removed
        """
        with self._lock:
            participant = self._participants.pop(participant_id, None)
            if participant is None:
                return None

            self._by_connection.pop(participant.connection.connection_id, None)

            room = self._rooms.get(participant.room)
            if room is not None:
                room.participants.pop(participant_id, None)
                if room.is_empty:
                    del self._rooms[participant.room]
                    logger.info("Room discarded", extra={"room": participant.room})

        logger.info(
            "Participant left",
            extra={"participant_id": participant_id, "room": participant.room},
        )
        return participant

    def on_disconnect(self, connection: ParticipantConnection) -> Participant | None:
        """Remove whatever participant owns a closed connection."""
        with self._lock:
            participant_id = self._by_connection.get(connection.connection_id)
            if participant_id is None:
                return None
            return self.leave(participant_id)

    def snapshot(self, room: RoomID) -> list[ParticipantID]:
        """Current member identifiers of a room, in join order."""
        with self._lock:
            target_room = self._rooms.get(room)
            if target_room is None:
                return []
            return list(target_room.participants)

    def members(self, room: RoomID) -> list[Participant]:
        """Current members of a room, in join order."""
        with self._lock:
            target_room = self._rooms.get(room)
            if target_room is None:
                return []
            return list(target_room.participants.values())

    def lookup(self, room: RoomID, participant_id: ParticipantID) -> Participant | None:
        """Find a participant by identifier within one room."""
        with self._lock:
            target_room = self._rooms.get(room)
            if target_room is None:
                return None
            return target_room.participants.get(participant_id)

    def resolve_target(self, sender: Participant, target: ParticipantID) -> Participant:
        """Resolve a signaling target in the sender's room.

        Raises:
            RoutingMiss: Target is absent from the room or is the sender itself
        """
        if target == sender.participant_id:
            raise RoutingMiss(sender.room, target)
        participant = self.lookup(sender.room, target)
        if participant is None:
            raise RoutingMiss(sender.room, target)
        return participant

    def participant_for(self, connection: ParticipantConnection) -> Participant | None:
        """Participant owned by a connection, if it has joined."""
        with self._lock:
            participant_id = self._by_connection.get(connection.connection_id)
            if participant_id is None:
                return None
            return self._participants.get(participant_id)

    def has_room(self, room: RoomID) -> bool:
        with self._lock:
            return room in self._rooms

    def rooms(self) -> list[RoomID]:
        with self._lock:
            return list(self._rooms)

    @property
    def participant_count(self) -> int:
        with self._lock:
            return len(self._participants)

    @property
    def room_count(self) -> int:
        with self._lock:
            return len(self._rooms)
