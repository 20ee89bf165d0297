"""Unit tests for the relay wire protocol.

Tests envelope encoding and the decode error taxonomy.
"""

import json

import pytest

from src.common.errors import (
    DecodeError,
    EnvelopeTooLargeError,
    MalformedEnvelopeError,
    UnknownEnvelopeTypeError,
)
from src.relay.protocol import (
    ChatMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    MessageCodec,
    OfferMessage,
    RoomUsersMessage,
)


class TestEncode:
    """Test envelope encoding."""

    def test_encode_join(self, codec: MessageCodec) -> None:
        """Join encodes as a tagged JSON object."""
        data = json.loads(codec.encode(JoinMessage(name="alice", room="42")))
        assert data == {"event": "Join", "name": "alice", "room": "42"}

    def test_encode_omits_unset_optional_fields(self, codec: MessageCodec) -> None:
        """Client-side Chat carries only its content."""
        data = json.loads(codec.encode(ChatMessage(content="hi")))
        assert data == {"event": "Chat", "content": "hi"}

    def test_encode_ice_candidate_keeps_wire_field_names(self, codec: MessageCodec) -> None:
        """sdpMid and sdpMLineIndex keep their camel-case names on the wire."""
        message = IceCandidateMessage(
            target="b", candidate="candidate:1 1 UDP 1 10.0.0.1 5000 typ host", sdpMid="0", sdpMLineIndex=0
        )
        data = json.loads(codec.encode(message))
        assert data["sdpMid"] == "0"
        assert data["sdpMLineIndex"] == 0
        assert "sender" not in data

    def test_encode_is_utf8(self, codec: MessageCodec) -> None:
        """Non-ASCII content survives encoding."""
        data = codec.encode(ChatMessage(content="héllo 👋"))
        assert isinstance(data, bytes)
        assert json.loads(data.decode("utf-8"))["content"] == "héllo 👋"


class TestDecode:
    """Test envelope decoding."""

    def test_decode_bytes_and_str(self, codec: MessageCodec) -> None:
        """Both text and binary frames decode."""
        raw = '{"event": "Join", "name": "bob", "room": "7"}'
        assert codec.decode(raw) == JoinMessage(name="bob", room="7")
        assert codec.decode(raw.encode()) == JoinMessage(name="bob", room="7")

    def test_decode_leave(self, codec: MessageCodec) -> None:
        assert isinstance(codec.decode('{"event": "Leave"}'), LeaveMessage)

    def test_decode_room_users_without_names(self, codec: MessageCodec) -> None:
        """Minimal RoomUsers as sent by older relays still decodes."""
        message = codec.decode('{"event": "RoomUsers", "users": ["a", "b"]}')
        assert isinstance(message, RoomUsersMessage)
        assert message.users == ["a", "b"]
        assert message.names == {}

    def test_decode_offer_with_sender(self, codec: MessageCodec) -> None:
        message = codec.decode('{"event": "Offer", "target": "b", "sdp": "v=0", "sender": "a"}')
        assert isinstance(message, OfferMessage)
        assert message.sender == "a"

    def test_decode_invalid_json(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError):
            codec.decode("{not json")

    def test_decode_non_object(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError, match="JSON object"):
            codec.decode('["Join"]')

    def test_decode_missing_event(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError, match="event"):
            codec.decode('{"name": "alice"}')

    def test_decode_non_string_event(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError):
            codec.decode('{"event": 3}')

    def test_decode_unknown_event(self, codec: MessageCodec) -> None:
        """Unknown tags are reported distinctly from malformed input."""
        with pytest.raises(UnknownEnvelopeTypeError) as exc_info:
            codec.decode('{"event": "Teleport"}')
        assert exc_info.value.event == "Teleport"
        assert exc_info.value.code == "UNKNOWN_TYPE"

    def test_decode_schema_violation(self, codec: MessageCodec) -> None:
        """Offer without a target violates the schema."""
        with pytest.raises(MalformedEnvelopeError):
            codec.decode('{"event": "Offer", "sdp": "v=0"}')

    def test_decode_empty_target_rejected(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError):
            codec.decode('{"event": "Answer", "target": "", "sdp": "v=0"}')

    def test_decode_empty_room_rejected(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError):
            codec.decode('{"event": "Join", "name": "alice", "room": ""}')

    def test_decode_negative_mline_index_rejected(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError):
            codec.decode(
                '{"event": "IceCandidate", "target": "b", "candidate": "c", "sdpMLineIndex": -1}'
            )

    def test_decode_too_large(self) -> None:
        """Oversized payloads are rejected before parsing."""
        codec = MessageCodec(max_envelope_bytes=256)
        payload = json.dumps({"event": "Chat", "content": "x" * 500})

        with pytest.raises(EnvelopeTooLargeError) as exc_info:
            codec.decode(payload)

        assert exc_info.value.limit == 256
        assert exc_info.value.size > 256
        assert exc_info.value.code == "TOO_LARGE"

    def test_size_limit_checked_before_json(self) -> None:
        """Oversized garbage reports TooLarge, not Malformed."""
        codec = MessageCodec(max_envelope_bytes=256)
        with pytest.raises(EnvelopeTooLargeError):
            codec.decode(b"\xff" * 300)

    def test_all_decode_errors_share_base(self, codec: MessageCodec) -> None:
        for raw in ("{", '{"event": "Nope"}', "[]"):
            with pytest.raises(DecodeError):
                codec.decode(raw)

    def test_malformed_code(self, codec: MessageCodec) -> None:
        with pytest.raises(MalformedEnvelopeError) as exc_info:
            codec.decode("{")
        assert exc_info.value.code == "MALFORMED"


def test_codec_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError):
        MessageCodec(max_envelope_bytes=0)
