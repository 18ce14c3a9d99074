"""Control message definitions and framing."""

from __future__ import annotations

from typing import Any, Literal

import msgpack
from pydantic import BaseModel, Field, ValidationError

PROTOCOL_VERSION = 1
MAGIC = b"BRRW"
HEADER_SIZE = 10
MAX_MESSAGE_SIZE = 64 * 1024


class Register(BaseModel):
    """Client request to bind a subdomain to its local target."""

    type: Literal["register"] = "register"
    subdomain: str | None = None
    local_port: int
    local_host: str = "localhost"
    binding_id: str | None = None
    attempt: int = 0
    version: int = PROTOCOL_VERSION


class RegisterOk(BaseModel):
    type: Literal["register_ok"] = "register_ok"
    binding_id: str
    session_id: str
    subdomain: str
    remote_endpoint: str
    url: str = ""


class RegisterFail(BaseModel):
    type: Literal["register_fail"] = "register_fail"
    reason: str
    message: str = ""


class Heartbeat(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    session_id: str
    seq: int = 0


class HeartbeatAck(BaseModel):
    type: Literal["heartbeat_ack"] = "heartbeat_ack"
    seq: int = 0


class Close(BaseModel):
    """Client-initiated graceful teardown."""

    type: Literal["close"] = "close"
    session_id: str


class Disconnect(BaseModel):
    """Broker-initiated disconnect.

    ``final`` tells the client the binding is gone for good and it must not
    reconnect.
    """

    type: Literal["disconnect"] = "disconnect"
    reason: str = ""
    final: bool = False


Message = Register | RegisterOk | RegisterFail | Heartbeat | HeartbeatAck | Close | Disconnect

MESSAGE_TYPES: dict[str, type[BaseModel]] = {
    "register": Register,
    "register_ok": RegisterOk,
    "register_fail": RegisterFail,
    "heartbeat": Heartbeat,
    "heartbeat_ack": HeartbeatAck,
    "close": Close,
    "disconnect": Disconnect,
}


def encode_message(msg: BaseModel) -> bytes:
    """Encode a message with protocol framing."""
    payload = msgpack.packb(msg.model_dump(mode="json"), use_bin_type=True)
    if len(payload) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(payload)} bytes (max: {MAX_MESSAGE_SIZE})")

    frame = bytearray()
    frame.extend(MAGIC)
    frame.append(PROTOCOL_VERSION)
    frame.append(0)
    frame.extend(len(payload).to_bytes(4, "little"))
    frame.extend(payload)
    return bytes(frame)


def decode_message(data: bytes) -> dict[str, Any]:
    """Decode a framed message into its raw dictionary."""
    if len(data) < HEADER_SIZE:
        raise ValueError("Message too short")

    if data[:4] != MAGIC:
        raise ValueError("Invalid magic bytes")

    version = data[4]
    if version > PROTOCOL_VERSION:
        raise ValueError(f"Unsupported protocol version: {version}")

    length = int.from_bytes(data[6:10], "little")
    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {length} bytes (max: {MAX_MESSAGE_SIZE})")

    payload = data[HEADER_SIZE : HEADER_SIZE + length]
    if len(payload) != length:
        raise ValueError("Truncated message")

    try:
        result = msgpack.unpackb(payload, raw=False)
    except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError, ValueError) as e:
        raise ValueError(f"Failed to decode message: {e}") from e

    if not isinstance(result, dict):
        raise ValueError("Message payload is not a map")
    return result


def parse_message(data: bytes) -> Message:
    """Decode a framed message and validate it into its typed model."""
    raw = decode_message(data)
    msg_type = raw.get("type")
    model = MESSAGE_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        raise ValueError(f"Unknown message type: {msg_type!r}")
    try:
        return model(**raw)  # type: ignore[return-value]
    except ValidationError as e:
        raise ValueError(f"Invalid {msg_type} message: {e}") from e
