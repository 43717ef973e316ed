"""Core - pure protocol logic.

Nothing in this package performs I/O. It defines how messages look on the
wire and how they are validated:

    codec           MessagePack arrays <-> positional field lists
    messages        Tagged message variants and request/reply parsing
    validation      Positional field checks
    errors          The error taxonomy
    config          ServerConfig
    logging_config  Logging setup shared by server and CLI
"""

from webrepl.core.codec import decode, encode
from webrepl.core.config import ServerConfig
from webrepl.core.errors import (
    DecodeError,
    DecodeErrorKind,
    ErrorCode,
    ExecutionError,
    ProtocolError,
    ProtocolErrorKind,
    TransferError,
    WebReplError,
)
from webrepl.core.logging_config import configure_logging
from webrepl.core.messages import (
    ChannelClass,
    Message,
    channel_class,
    parse_reply,
    parse_request,
)

__all__ = [
    # Codec
    "encode",
    "decode",
    # Messages
    "Message",
    "ChannelClass",
    "channel_class",
    "parse_request",
    "parse_reply",
    # Errors
    "WebReplError",
    "DecodeError",
    "DecodeErrorKind",
    "ProtocolError",
    "ProtocolErrorKind",
    "TransferError",
    "ErrorCode",
    "ExecutionError",
    # Config
    "ServerConfig",
    "configure_logging",
]
