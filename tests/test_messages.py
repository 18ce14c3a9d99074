"""Tests for control message framing."""

from __future__ import annotations

import msgpack
import pytest

from burrow.protocol.messages import (
    HEADER_SIZE,
    MAGIC,
    MAX_MESSAGE_SIZE,
    PROTOCOL_VERSION,
    Disconnect,
    Heartbeat,
    HeartbeatAck,
    Register,
    RegisterFail,
    decode_message,
    encode_message,
    parse_message,
)


class TestFraming:
    def test_header_layout(self) -> None:
        data = encode_message(HeartbeatAck(seq=7))
        assert data[:4] == MAGIC
        assert data[4] == PROTOCOL_VERSION
        assert data[5] == 0
        assert int.from_bytes(data[6:10], "little") == len(data) - HEADER_SIZE

    def test_parse_register(self) -> None:
        msg = parse_message(
            encode_message(Register(subdomain="app", local_port=3000, binding_id="b1", attempt=2))
        )
        assert isinstance(msg, Register)
        assert msg.subdomain == "app"
        assert msg.local_host == "localhost"
        assert msg.binding_id == "b1"
        assert msg.attempt == 2

    def test_parse_disconnect_final(self) -> None:
        msg = parse_message(encode_message(Disconnect(reason="deleted", final=True)))
        assert isinstance(msg, Disconnect)
        assert msg.final is True

    def test_decode_returns_raw_dict(self) -> None:
        raw = decode_message(encode_message(Heartbeat(session_id="s", seq=3)))
        assert raw["type"] == "heartbeat"
        assert raw["seq"] == 3


class TestMalformed:
    def test_too_short(self) -> None:
        with pytest.raises(ValueError, match="too short"):
            decode_message(b"BRR")

    def test_bad_magic(self) -> None:
        data = bytearray(encode_message(HeartbeatAck(seq=1)))
        data[:4] = b"XXXX"
        with pytest.raises(ValueError, match="magic"):
            decode_message(bytes(data))

    def test_future_version(self) -> None:
        data = bytearray(encode_message(HeartbeatAck(seq=1)))
        data[4] = PROTOCOL_VERSION + 1
        with pytest.raises(ValueError, match="version"):
            decode_message(bytes(data))

    def test_truncated(self) -> None:
        data = encode_message(RegisterFail(reason="duplicate_subdomain", message="taken"))
        with pytest.raises(ValueError, match="Truncated"):
            decode_message(data[:-2])

    def test_oversized_length_field(self) -> None:
        data = bytearray(encode_message(HeartbeatAck(seq=1)))
        data[6:10] = (MAX_MESSAGE_SIZE + 1).to_bytes(4, "little")
        with pytest.raises(ValueError, match="too large"):
            decode_message(bytes(data))

    def _frame(self, payload: bytes) -> bytes:
        return MAGIC + bytes([PROTOCOL_VERSION, 0]) + len(payload).to_bytes(4, "little") + payload

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError, match="Unknown message type"):
            parse_message(self._frame(msgpack.packb({"type": "bogus"})))

    def test_non_map_payload(self) -> None:
        with pytest.raises(ValueError, match="not a map"):
            parse_message(self._frame(msgpack.packb([1, 2, 3])))

    def test_invalid_fields(self) -> None:
        with pytest.raises(ValueError, match="Invalid register"):
            parse_message(self._frame(msgpack.packb({"type": "register", "local_port": "abc"})))
