"""Wire protocol for the tunnel control channel."""

from burrow.protocol.messages import (
    MAGIC,
    PROTOCOL_VERSION,
    Close,
    Disconnect,
    Heartbeat,
    HeartbeatAck,
    Message,
    Register,
    RegisterFail,
    RegisterOk,
    decode_message,
    encode_message,
    parse_message,
)

__all__ = [
    "MAGIC",
    "PROTOCOL_VERSION",
    "Message",
    "Register",
    "RegisterOk",
    "RegisterFail",
    "Heartbeat",
    "HeartbeatAck",
    "Close",
    "Disconnect",
    "encode_message",
    "decode_message",
    "parse_message",
]
