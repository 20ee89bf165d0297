"""Unit tests for relay routing.

Drives the RelayEngine with in-memory connections and checks exactly what
each participant receives.
"""

import asyncio
import json

import pytest

from src.relay.engine import RelayEngine
from src.relay.metrics import MetricsCollector
from src.relay.protocol import MessageCodec
from src.relay.roster import Roster
from tests.helpers.relay_test_utils import FakeConnection, settle


def send(engine: RelayEngine, connection: FakeConnection, **envelope: object) -> None:
    engine.handle_raw(connection, json.dumps(envelope))


def join(engine: RelayEngine, name: str, room: str) -> tuple[FakeConnection, str]:
    """Join a fresh connection and return it with its assigned identifier."""
    connection = FakeConnection()
    send(engine, connection, event="Join", name=name, room=room)
    return connection, connection.last("Welcome").id


@pytest.fixture
def engine(roster: Roster, fresh_metrics: MetricsCollector) -> RelayEngine:
    return RelayEngine(roster, MessageCodec(), fresh_metrics)


class TestJoin:
    """Test Join handling."""

    def test_joiner_is_welcomed_before_room_users(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")

        assert a.events() == ["Welcome", "RoomUsers"]
        welcome = a.last("Welcome")
        assert welcome.room == "42"
        assert welcome.name == "alice"

        room_users = a.last("RoomUsers")
        assert room_users.room == "42"
        assert room_users.users == [a_id]
        assert room_users.names == {a_id: "alice"}

    def test_second_join_broadcasts_to_everyone(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        a.clear()

        b, b_id = join(engine, "bob", "42")

        assert a.events() == ["RoomUsers"]
        assert a.last("RoomUsers").users == [a_id, b_id]
        assert b.last("RoomUsers").users == [a_id, b_id]

    def test_broadcast_never_crosses_rooms(self, engine: RelayEngine) -> None:
        a, _ = join(engine, "alice", "42")
        a.clear()

        c, c_id = join(engine, "carol", "7")

        assert a.sent == []
        assert c.last("RoomUsers").users == [c_id]

    def test_rejoin_leaves_previous_room(self, engine: RelayEngine, roster: Roster) -> None:
        """A second Join on one connection departs the old room first."""
        a, a_id = join(engine, "alice", "42")
        b, b_id = join(engine, "bob", "42")
        b.clear()

        send(engine, a, event="Join", name="alice", room="7")
        new_id = a.last("Welcome").id

        assert new_id != a_id
        assert b.last("RoomUsers").users == [b_id]
        assert a.last("RoomUsers").users == [new_id]
        assert roster.snapshot("42") == [b_id]
        assert roster.snapshot("7") == [new_id]


class TestLeave:
    """Test Leave and disconnect handling."""

    def test_leave_broadcasts_to_remaining(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        a.clear()
        b.clear()

        send(engine, b, event="Leave")

        assert a.events() == ["RoomUsers"]
        assert a.last("RoomUsers").users == [a_id]
        assert b.sent == []

    def test_last_leave_discards_room_without_broadcast(
        self, engine: RelayEngine, roster: Roster
    ) -> None:
        a, _ = join(engine, "alice", "42")
        a.clear()

        send(engine, a, event="Leave")

        assert a.sent == []
        assert not roster.has_room("42")

    def test_leave_twice_produces_no_broadcast(self, engine: RelayEngine) -> None:
        a, _ = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        send(engine, b, event="Leave")
        a.clear()

        send(engine, b, event="Leave")

        assert a.sent == []

    def test_leave_without_join_is_ignored(self, engine: RelayEngine) -> None:
        connection = FakeConnection()
        send(engine, connection, event="Leave")
        assert connection.sent == []

    def test_disconnect_without_leave(self, engine: RelayEngine, roster: Roster) -> None:
        a, a_id = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        a.clear()

        engine.handle_disconnect(b)

        assert a.last("RoomUsers").users == [a_id]
        assert roster.participant_count == 1

    def test_disconnect_after_leave_is_noop(self, engine: RelayEngine) -> None:
        a, _ = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        send(engine, b, event="Leave")
        a.clear()

        engine.handle_disconnect(b)

        assert a.sent == []


class TestSignaling:
    """Test Offer/Answer/IceCandidate routing."""

    def test_offer_forwarded_to_target_with_sender(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        b, b_id = join(engine, "bob", "42")
        c, _ = join(engine, "carol", "42")
        for connection in (a, b, c):
            connection.clear()

        send(engine, a, event="Offer", target=b_id, sdp="v=0 offer")

        offer = b.last("Offer")
        assert offer.sender == a_id
        assert offer.target == b_id
        assert offer.sdp == "v=0 offer"
        assert a.sent == []
        assert c.sent == []

    def test_sender_field_cannot_be_spoofed(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        b, b_id = join(engine, "bob", "42")

        send(engine, a, event="Answer", target=b_id, sdp="v=0", sender="mallory")

        assert b.last("Answer").sender == a_id

    def test_ice_candidate_fields_preserved(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        b, b_id = join(engine, "bob", "42")

        send(
            engine,
            b,
            event="IceCandidate",
            target=a_id,
            candidate="candidate:1 1 UDP 2122260223 10.0.0.2 50000 typ host",
            sdpMid="0",
            sdpMLineIndex=0,
        )

        candidate = a.last("IceCandidate")
        assert candidate.sender == b_id
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0
        assert candidate.candidate.startswith("candidate:1")

    def test_unknown_target_dropped_silently(
        self, engine: RelayEngine, fresh_metrics: MetricsCollector
    ) -> None:
        """Routing misses produce no error to the sender and no crash."""
        a, _ = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        a.clear()
        b.clear()

        send(engine, a, event="Offer", target="ghost", sdp="v=0")

        assert a.sent == []
        assert b.sent == []
        assert fresh_metrics.get_summary()["routing_misses"] == 1

    def test_target_in_other_room_dropped(self, engine: RelayEngine) -> None:
        a, _ = join(engine, "alice", "42")
        c, c_id = join(engine, "carol", "7")
        c.clear()

        send(engine, a, event="Offer", target=c_id, sdp="v=0")

        assert c.sent == []

    def test_self_target_dropped(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        a.clear()

        send(engine, a, event="Offer", target=a_id, sdp="v=0")

        assert a.sent == []

    def test_signaling_before_join_rejected(self, engine: RelayEngine) -> None:
        connection = FakeConnection()

        send(engine, connection, event="Offer", target="b", sdp="v=0")

        error = connection.last("Error")
        assert error.code == "NOT_IN_ROOM"
        assert error.message == "You must join a room first"


class TestChat:
    """Test chat fan-out."""

    def test_chat_fans_out_without_echo(self, engine: RelayEngine) -> None:
        a, a_id = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        c, _ = join(engine, "carol", "42")
        for connection in (a, b, c):
            connection.clear()

        send(engine, a, event="Chat", content="hi")

        assert a.sent == []
        for connection in (b, c):
            assert connection.events() == ["Chat"]
            chat = connection.last("Chat")
            assert chat.sender == a_id
            assert chat.name == "alice"
            assert chat.content == "hi"
            assert chat.timestamp > 1_600_000_000_000

    def test_chat_stays_in_room(self, engine: RelayEngine) -> None:
        a, _ = join(engine, "alice", "42")
        c, _ = join(engine, "carol", "7")
        c.clear()

        send(engine, a, event="Chat", content="hi")

        assert c.sent == []

    def test_chat_before_join_rejected(self, engine: RelayEngine) -> None:
        connection = FakeConnection()

        send(engine, connection, event="Chat", content="hi")

        assert connection.last("Error").code == "NOT_IN_ROOM"


class TestProtocolErrors:
    """Test rejection of bad input."""

    def test_malformed_envelope_answered_with_error(
        self, engine: RelayEngine, fresh_metrics: MetricsCollector
    ) -> None:
        a, _ = join(engine, "alice", "42")
        a.clear()

        engine.handle_raw(a, "{not json")

        assert a.last("Error").code == "MALFORMED"
        assert not a.closed
        assert fresh_metrics.get_summary()["protocol_errors"] == 1

    def test_unknown_event_answered_with_error(self, engine: RelayEngine) -> None:
        connection = FakeConnection()
        engine.handle_raw(connection, '{"event": "Teleport"}')
        assert connection.last("Error").code == "UNKNOWN_TYPE"

    def test_oversized_envelope_answered_with_error(self, roster: Roster) -> None:
        engine = RelayEngine(roster, MessageCodec(max_envelope_bytes=256))
        connection = FakeConnection()

        engine.handle_raw(connection, json.dumps({"event": "Chat", "content": "x" * 1000}))

        assert connection.last("Error").code == "TOO_LARGE"

    def test_bad_input_from_one_participant_does_not_affect_others(
        self, engine: RelayEngine
    ) -> None:
        a, a_id = join(engine, "alice", "42")
        b, _ = join(engine, "bob", "42")
        a.clear()

        engine.handle_raw(b, "garbage")
        send(engine, b, event="Chat", content="still here")

        assert a.events() == ["Chat"]
        assert roster_ids(engine, "42") == [a_id, b.last("Welcome").id]

    @pytest.mark.parametrize("event", ["Welcome", "RoomUsers", "Error"])
    def test_server_only_envelopes_rejected(self, engine: RelayEngine, event: str) -> None:
        connection = FakeConnection()
        payloads = {
            "Welcome": {"event": "Welcome", "id": "x", "room": "42", "name": "x"},
            "RoomUsers": {"event": "RoomUsers", "users": []},
            "Error": {"event": "Error", "message": "boom"},
        }

        engine.handle_raw(connection, json.dumps(payloads[event]))

        assert connection.last("Error").code == "UNEXPECTED_EVENT"


def roster_ids(engine: RelayEngine, room: str) -> list[str]:
    return engine.roster.snapshot(room)


class TestServe:
    """Test the per-connection worker."""

    @pytest.mark.asyncio
    async def test_serve_processes_frames_and_cleans_up(
        self, engine: RelayEngine, roster: Roster, fresh_metrics: MetricsCollector
    ) -> None:
        a, a_id = join(engine, "alice", "42")
        b = FakeConnection()
        worker = asyncio.create_task(engine.serve(b))

        b.feed(json.dumps({"event": "Join", "name": "bob", "room": "42"}))
        await settle()
        assert len(roster.snapshot("42")) == 2
        assert fresh_metrics.get_summary()["connections_active"] == 1

        a.clear()
        b.hang_up()
        await asyncio.wait_for(worker, timeout=1.0)

        assert a.last("RoomUsers").users == [a_id]
        assert b.closed
        assert fresh_metrics.get_summary()["connections_active"] == 0
        assert fresh_metrics.get_summary()["participants_active"] == 1


class TestRoom42Scenario:
    """Room "42" end to end at the routing layer."""

    def test_scenario(self, engine: RelayEngine, roster: Roster) -> None:
        a, a_id = join(engine, "A", "42")
        assert a.last("RoomUsers").users == [a_id]

        b, b_id = join(engine, "B", "42")
        assert a.last("RoomUsers").users == [a_id, b_id]
        assert b.last("RoomUsers").users == [a_id, b_id]

        a.clear()
        b.clear()
        send(engine, a, event="Chat", content="hi")
        chat = b.last("Chat")
        assert (chat.sender, chat.content) == (a_id, "hi")
        assert isinstance(chat.timestamp, int)
        assert "Chat" not in a.events()

        engine.handle_disconnect(b)
        assert a.last("RoomUsers").users == [a_id]

        send(engine, a, event="Leave")
        assert not roster.has_room("42")
