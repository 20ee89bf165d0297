"""Envelope routing for the relay.

The RelayEngine decides, for each decoded envelope and its originating
connection, who receives what:

- Join → admit into the Roster, Welcome the joiner, broadcast RoomUsers
- Leave / connection close → remove, broadcast RoomUsers to who remains
- Offer / Answer / IceCandidate → forward to the target in the sender's room
- Chat → fan out to every other member of the sender's room

The engine keeps no state of its own; the connection ↔ participant
association lives in the Roster. Membership snapshots are taken under the
Roster lock together with the join or leave that produced them; the sends
happen after the lock is released and are non-blocking enqueues on the
recipients' connections.
"""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from src.common.errors import DecodeError, RoutingMiss
from src.common.types import now_ms
from src.relay.metrics import MetricsCollector, get_metrics_collector
from src.relay.protocol import (
    AnswerMessage,
    ChatMessage,
    ErrorMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    MessageCodec,
    OfferMessage,
    RoomUsersMessage,
    WelcomeMessage,
)
from src.relay.roster import Participant, Roster
from src.relay.transport.base import ParticipantConnection

logger = logging.getLogger(__name__)

# Members a RoomUsers message was computed from, paired with the message
type RoomSnapshot = tuple[list[Participant], RoomUsersMessage]


class RelayEngine:
    """Routes envelopes between participants of the same room."""

    def __init__(
        self,
        roster: Roster,
        codec: MessageCodec | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize relay engine.

        Args:
            roster: Shared room membership table
            codec: Envelope codec (default limits if omitted)
            metrics: Metrics collector (global singleton if omitted)
        """
        self.roster = roster
        self.codec = codec or MessageCodec()
        self.metrics = metrics or get_metrics_collector()

        self._handlers: dict[type[BaseModel], Callable[[ParticipantConnection, Any], None]] = {
            JoinMessage: self._on_join,
            LeaveMessage: self._on_leave,
            OfferMessage: self._on_signaling,
            AnswerMessage: self._on_signaling,
            IceCandidateMessage: self._on_signaling,
            ChatMessage: self._on_chat,
            WelcomeMessage: self._on_server_only,
            RoomUsersMessage: self._on_server_only,
            ErrorMessage: self._on_server_only,
        }

    async def serve(self, connection: ParticipantConnection) -> None:
        """Run the worker for one participant connection.

        Processes frames in arrival order until the connection closes, then
        removes the participant and notifies its room.
        """
        self.metrics.record_connection_open()
        logger.info("Participant connection opened", extra={"connection_id": connection.connection_id})

        try:
            async for raw in connection.receive():
                self.handle_raw(connection, raw)
        except ConnectionError as e:
            logger.info(
                "Participant connection lost",
                extra={"connection_id": connection.connection_id, "error": str(e)},
            )
        finally:
            self.handle_disconnect(connection)
            await connection.close(reason="relay worker finished")
            self.metrics.record_connection_closed()

    def handle_raw(self, connection: ParticipantConnection, raw: bytes | str) -> None:
        """Decode one frame and dispatch it.

        Undecodable frames are logged, answered with an Error envelope, and
        otherwise ignored; the connection stays open.
        """
        try:
            envelope = self.codec.decode(raw)
        except DecodeError as e:
            self.metrics.record_protocol_error()
            logger.warning(
                "Rejected envelope",
                extra={"connection_id": connection.connection_id, "code": e.code, "error": str(e)},
            )
            self._send(connection, ErrorMessage(message=str(e), code=e.code))
            return

        self.metrics.record_envelope_received()
        self.dispatch(connection, envelope)

    def dispatch(self, connection: ParticipantConnection, envelope: BaseModel) -> None:
        """Route a decoded envelope from a connection."""
        handler = self._handlers[type(envelope)]
        handler(connection, envelope)

    def handle_disconnect(self, connection: ParticipantConnection) -> None:
        """Transport-level close: depart whatever participant owns the connection."""
        with self.roster.locked():
            participant = self.roster.on_disconnect(connection)
            snapshot = self._room_users(participant.room) if participant is not None else None
        self._deliver(snapshot)
        self._update_occupancy()

    # === Handlers ===

    def _on_join(self, connection: ParticipantConnection, message: JoinMessage) -> None:
        departed: RoomSnapshot | None = None
        with self.roster.locked():
            previous = self.roster.participant_for(connection)
            if previous is not None:
                logger.info(
                    "Participant re-joining, leaving previous room",
                    extra={"participant_id": previous.participant_id, "room": previous.room},
                )
                departed = self._depart(previous)

            participant = self.roster.join(connection, message.name, message.room)
            joined = self._room_users(participant.room)

        self._deliver(departed)
        self._send(
            connection,
            WelcomeMessage(
                id=participant.participant_id, room=participant.room, name=participant.name
            ),
        )
        self._deliver(joined)
        self._update_occupancy()

    def _on_leave(self, connection: ParticipantConnection, message: LeaveMessage) -> None:
        with self.roster.locked():
            participant = self.roster.participant_for(connection)
            if participant is None:
                logger.debug(
                    "Leave from connection without a room",
                    extra={"connection_id": connection.connection_id},
                )
                return
            snapshot = self._depart(participant)
        self._deliver(snapshot)
        self._update_occupancy()

    def _on_signaling(
        self,
        connection: ParticipantConnection,
        message: OfferMessage | AnswerMessage | IceCandidateMessage,
    ) -> None:
        sender = self._require_participant(connection, message.event)
        if sender is None:
            return

        try:
            target = self.roster.resolve_target(sender, message.target)
        except RoutingMiss as miss:
            self.metrics.record_routing_miss()
            logger.debug(
                "Signaling target not in room, dropping",
                extra={"event": message.event, "room": miss.room, "target": miss.target},
            )
            return

        forwarded = message.model_copy(update={"sender": sender.participant_id})
        if self._send(target.connection, forwarded):
            self.metrics.record_envelope_forwarded()

    def _on_chat(self, connection: ParticipantConnection, message: ChatMessage) -> None:
        sender = self._require_participant(connection, message.event)
        if sender is None:
            return

        relayed = ChatMessage(
            content=message.content,
            sender=sender.participant_id,
            name=sender.name,
            timestamp=now_ms(),
        )
        data = self.codec.encode(relayed)
        recipients = [
            member
            for member in self.roster.members(sender.room)
            if member.participant_id != sender.participant_id
        ]
        for member in recipients:
            member.connection.send(data)

        self.metrics.record_chat()
        logger.debug(
            "Chat relayed",
            extra={
                "participant_id": sender.participant_id,
                "room": sender.room,
                "recipients": len(recipients),
            },
        )

    def _on_server_only(self, connection: ParticipantConnection, message: BaseModel) -> None:
        event = getattr(message, "event", type(message).__name__)
        self.metrics.record_protocol_error()
        logger.warning(
            "Client sent a server-only envelope",
            extra={"connection_id": connection.connection_id, "event": event},
        )
        self._send(
            connection,
            ErrorMessage(message=f"{event} may only be sent by the relay", code="UNEXPECTED_EVENT"),
        )

    # === Helpers ===

    def _require_participant(
        self, connection: ParticipantConnection, event: str
    ) -> Participant | None:
        participant = self.roster.participant_for(connection)
        if participant is None:
            logger.warning(
                "Envelope before join",
                extra={"connection_id": connection.connection_id, "event": event},
            )
            self._send(
                connection, ErrorMessage(message="You must join a room first", code="NOT_IN_ROOM")
            )
        return participant

    def _depart(self, participant: Participant) -> RoomSnapshot | None:
        """Remove a participant. Caller holds the roster lock."""
        if self.roster.leave(participant.participant_id) is None:
            return None
        return self._room_users(participant.room)

    def _room_users(self, room: str) -> RoomSnapshot | None:
        """Snapshot a room's membership. Caller holds the roster lock.

        Returns None for an empty room, which gets no broadcast.
        """
        members = self.roster.members(room)
        if not members:
            return None

        message = RoomUsersMessage(
            room=room,
            users=[member.participant_id for member in members],
            names={member.participant_id: member.name for member in members},
        )
        return members, message

    def _deliver(self, snapshot: RoomSnapshot | None) -> None:
        """Send a membership snapshot to the members it was taken from."""
        if snapshot is None:
            return

        members, message = snapshot
        data = self.codec.encode(message)
        for member in members:
            member.connection.send(data)

        self.metrics.record_broadcast(len(members))
        logger.info("Room membership broadcast", extra={"room": message.room, "users": message.users})

    def _send(self, connection: ParticipantConnection, message: BaseModel) -> bool:
        return connection.send(self.codec.encode(message))

    def _update_occupancy(self) -> None:
        self.metrics.set_roster_occupancy(self.roster.participant_count, self.roster.room_count)
