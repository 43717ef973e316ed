"""Error taxonomy for the WebREPL protocol engine.

Four families, each with its own blast radius:

    DecodeError     Malformed wire data. Connection-fatal.
    ProtocolError   Well-formed but structurally invalid message.
                    Reported on the offending channel.
    TransferError   TFTP-coded file transfer failure. Reported via ERROR,
                    the transfer is discarded.
    ExecutionError  Failure surfaced by the execution runtime. Reported via
                    PRO status 1.
"""

from __future__ import annotations

from enum import Enum, IntEnum


class WebReplError(Exception):
    """Base class for all webrepl errors."""


class DecodeErrorKind(Enum):
    """Why a binary message could not be decoded."""

    MALFORMED = "malformed"  # Truncated or syntactically invalid
    NOT_ARRAY = "not_array"  # Top-level value is not a sequence
    EMPTY = "empty"  # Sequence has zero elements


class DecodeError(WebReplError):
    """Raised when an inbound message cannot be decoded.

    Attributes:
        kind: The decode failure category.
    """

    def __init__(self, kind: DecodeErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        message = kind.value if not detail else f"{kind.value}: {detail}"
        super().__init__(message)


class ProtocolErrorKind(Enum):
    """Structural problems with an otherwise decodable message."""

    INVALID_CHANNEL = "invalid channel"
    UNKNOWN_OPCODE = "unknown opcode"
    MISSING_FIELD = "missing field"
    INVALID_FIELD = "invalid field"
    NOT_AUTHENTICATED = "not authenticated"
    DIRECTION = "server-only message"


class ProtocolError(WebReplError):
    """Raised for well-formed messages that violate the message contract.

    Attributes:
        kind: The violation category.
        channel: Channel the message arrived on, if it could be determined.
    """

    def __init__(
        self,
        kind: ProtocolErrorKind,
        detail: str = "",
        channel: int | None = None,
    ) -> None:
        self.kind = kind
        self.detail = detail
        self.channel = channel
        message = kind.value if not detail else f"{kind.value}: {detail}"
        super().__init__(message)


class ErrorCode(IntEnum):
    """TFTP error codes carried by file-channel ERROR messages."""

    UNDEFINED = 0
    FILE_NOT_FOUND = 1
    ACCESS_VIOLATION = 2
    DISK_FULL = 3
    ILLEGAL_OPERATION = 4
    UNKNOWN_TRANSFER_ID = 5
    FILE_EXISTS = 6
    NO_SUCH_USER = 7
    OPTIONS_REJECTED = 8


class TransferError(WebReplError):
    """Raised by storage and the transfer state machine.

    Attributes:
        code: TFTP error code reported to the peer.
        message: Human-readable reason.
    """

    def __init__(self, code: ErrorCode, message: str = "") -> None:
        self.code = code
        self.message = message or code.name.replace("_", " ").capitalize()
        super().__init__(f"{code.name}: {self.message}")


class ExecutionError(WebReplError):
    """Raised by a runtime to fail a command with a message of its choosing.

    The message is sent verbatim as the PRO error string.
    """
