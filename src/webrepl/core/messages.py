"""Message variants - tagged, validated views of decoded field lists.

Every message on the wire is `[channel, opcode, ...]` (custom channels carry
no opcode). Each variant here is a frozen dataclass that knows its schema:

    from_fields(reader)  Validate positional fields, ignore trailing extras.
    to_fields()          Render positional fields, dropping absent trailing
                         optionals.

Channel classes:
    0        EVENT      Authentication, INFO and LOG records.
    1..22    EXECUTION  One REPL context per channel.
    23       FILE       TFTP-style block transfer.
    24..254  CUSTOM     Opaque to the engine.

Execution opcodes overlap between directions (EXE=0 and RES=0), so parsing
takes an explicit direction: parse_request() for client-to-server messages,
parse_reply() for server-to-client messages.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import Any, ClassVar

from webrepl.core.errors import ProtocolError, ProtocolErrorKind
from webrepl.core.validation import FieldReader, validate_channel

EVENT_CHANNEL = 0
FIRST_EXEC_CHANNEL = 1
LAST_EXEC_CHANNEL = 22
FILE_CHANNEL = 23
PRIMARY_EXEC_CHANNEL = FIRST_EXEC_CHANNEL

# Opcode used for error replies on custom channels.
CUSTOM_ERROR_OPCODE = 255

MAX_BLOCK_NUMBER = 65535


class ChannelClass(Enum):
    """How a channel id is routed."""

    EVENT = auto()
    EXECUTION = auto()
    FILE = auto()
    CUSTOM = auto()


def channel_class(channel: int) -> ChannelClass:
    """Classify a validated channel id."""
    if channel == EVENT_CHANNEL:
        return ChannelClass.EVENT
    if channel == FILE_CHANNEL:
        return ChannelClass.FILE
    if FIRST_EXEC_CHANNEL <= channel <= LAST_EXEC_CHANNEL:
        return ChannelClass.EXECUTION
    return ChannelClass.CUSTOM


class EventOp(IntEnum):
    AUTH = 0
    AUTH_OK = 1
    AUTH_FAIL = 2
    INFO = 3
    LOG = 5


class ExecOp(IntEnum):
    """Client-to-server execution opcodes."""

    EXE = 0
    INT = 1
    RST = 2


class ExecReplyOp(IntEnum):
    """Server-to-client execution opcodes."""

    RES = 0
    CON = 1
    PRO = 2
    COM = 3


class FileOp(IntEnum):
    RRQ = 1
    WRQ = 2
    DATA = 3
    ACK = 4
    ERROR = 5


class ExecFormat(IntEnum):
    """EXE payload kinds."""

    SOURCE = 0
    BYTECODE = 1


class ResetMode(IntEnum):
    SOFT = 0
    HARD = 1


def _trim(fields: list[Any]) -> list[Any]:
    """Drop absent trailing optional fields."""
    while fields and fields[-1] is None:
        fields.pop()
    return fields


def _block(reader: FieldReader, index: int) -> int:
    block = reader.require(index, int, "block")
    if not 0 <= block <= MAX_BLOCK_NUMBER:
        raise ProtocolError(
            ProtocolErrorKind.INVALID_FIELD,
            f"block {block} out of range",
            channel=reader.channel,
        )
    return block


class Message:
    """Base class for all message variants."""

    channel: int
    opcode: ClassVar[int]

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Message:
        raise NotImplementedError

    def to_fields(self) -> list[Any]:
        raise NotImplementedError


# =============================================================================
# Event channel
# =============================================================================


@dataclass(frozen=True)
class Auth(Message):
    password: str
    username: str | None = None
    channel: int = field(default=EVENT_CHANNEL, init=False)
    opcode: ClassVar[int] = EventOp.AUTH

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Auth:
        return cls(
            password=reader.require(2, str, "password"),
            username=reader.optional(3, str, "username"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.password, self.username])


@dataclass(frozen=True)
class AuthOk(Message):
    token: str | None = None
    expires: int | None = None
    channel: int = field(default=EVENT_CHANNEL, init=False)
    opcode: ClassVar[int] = EventOp.AUTH_OK

    @classmethod
    def from_fields(cls, reader: FieldReader) -> AuthOk:
        return cls(
            token=reader.optional(2, str, "token"),
            expires=reader.optional(3, int, "expires"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.token, self.expires])


@dataclass(frozen=True)
class AuthFail(Message):
    reason: str | None = None
    channel: int = field(default=EVENT_CHANNEL, init=False)
    opcode: ClassVar[int] = EventOp.AUTH_FAIL

    @classmethod
    def from_fields(cls, reader: FieldReader) -> AuthFail:
        return cls(reason=reader.optional(2, str, "reason"))

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.reason])


@dataclass(frozen=True)
class Info(Message):
    """Opaque notification payload, passed through unmodified."""

    payload: Any = None
    channel: int = field(default=EVENT_CHANNEL, init=False)
    opcode: ClassVar[int] = EventOp.INFO

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Info:
        return cls(payload=reader.optional(2, object, "payload"))

    def to_fields(self) -> list[Any]:
        return [self.channel, int(self.opcode), self.payload]


@dataclass(frozen=True)
class Log(Message):
    """Log record. level uses the stdlib logging numbers."""

    level: int
    message: str
    source: str | None = None
    channel: int = field(default=EVENT_CHANNEL, init=False)
    opcode: ClassVar[int] = EventOp.LOG

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Log:
        return cls(
            level=reader.require(2, int, "level"),
            message=reader.require(3, str, "message"),
            source=reader.optional(4, str, "source"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.level, self.message, self.source])


# =============================================================================
# Execution channels
# =============================================================================


@dataclass(frozen=True)
class Exe(Message):
    channel: int
    data: str | bytes
    format: int = ExecFormat.SOURCE
    id: Any = None
    opcode: ClassVar[int] = ExecOp.EXE

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Exe:
        fmt = reader.optional(3, int, "format", default=int(ExecFormat.SOURCE))
        if fmt not in tuple(ExecFormat):
            raise ProtocolError(
                ProtocolErrorKind.INVALID_FIELD,
                f"unknown format {fmt}",
                channel=reader.channel,
            )
        return cls(
            channel=reader.channel,
            data=reader.require(2, (str, bytes), "data"),
            format=fmt,
            id=reader.optional(4, object, "id"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.data, int(self.format), self.id])


@dataclass(frozen=True)
class Int(Message):
    """Interrupt the running command."""

    channel: int
    opcode: ClassVar[int] = ExecOp.INT

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Int:
        return cls(channel=reader.channel)

    def to_fields(self) -> list[Any]:
        return [self.channel, int(self.opcode)]


@dataclass(frozen=True)
class Rst(Message):
    channel: int
    mode: int = ResetMode.SOFT
    opcode: ClassVar[int] = ExecOp.RST

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Rst:
        mode = reader.optional(2, int, "mode", default=int(ResetMode.SOFT))
        if mode not in tuple(ResetMode):
            raise ProtocolError(
                ProtocolErrorKind.INVALID_FIELD,
                f"unknown reset mode {mode}",
                channel=reader.channel,
            )
        return cls(channel=reader.channel, mode=mode)

    def to_fields(self) -> list[Any]:
        return [self.channel, int(self.opcode), int(self.mode)]


@dataclass(frozen=True)
class Res(Message):
    """Streamed command output."""

    channel: int
    data: str | bytes
    id: Any = None
    opcode: ClassVar[int] = ExecReplyOp.RES

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Res:
        return cls(
            channel=reader.channel,
            data=reader.require(2, (str, bytes), "data"),
            id=reader.optional(3, object, "id"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.data, self.id])


@dataclass(frozen=True)
class Con(Message):
    """Continuation prompt: the submitted input is incomplete."""

    channel: int
    id: Any = None
    opcode: ClassVar[int] = ExecReplyOp.CON

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Con:
        return cls(channel=reader.channel, id=reader.optional(2, object, "id"))

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.id])


@dataclass(frozen=True)
class Pro(Message):
    """Command completion. status 0 is success, 1 carries an error string."""

    channel: int
    status: int
    error: str | None = None
    id: Any = None
    opcode: ClassVar[int] = ExecReplyOp.PRO

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Pro:
        return cls(
            channel=reader.channel,
            status=reader.require(2, int, "status"),
            error=reader.optional(3, str, "error"),
            id=reader.optional(4, object, "id"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.status, self.error, self.id])


@dataclass(frozen=True)
class Com(Message):
    """Tab-completion candidates."""

    channel: int
    candidates: tuple[str, ...]
    id: Any = None
    opcode: ClassVar[int] = ExecReplyOp.COM

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Com:
        candidates = reader.require(2, list, "candidates")
        return cls(
            channel=reader.channel,
            candidates=tuple(str(c) for c in candidates),
            id=reader.optional(3, object, "id"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), list(self.candidates), self.id])


# =============================================================================
# File channel
# =============================================================================


@dataclass(frozen=True)
class Rrq(Message):
    """Read request (download)."""

    path: str
    blksize: int | None = None
    timeout: int | None = None
    channel: int = field(default=FILE_CHANNEL, init=False)
    opcode: ClassVar[int] = FileOp.RRQ

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Rrq:
        return cls(
            path=reader.require(2, str, "path"),
            blksize=reader.optional(3, int, "blksize"),
            timeout=reader.optional(4, int, "timeout"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.path, self.blksize, self.timeout])


@dataclass(frozen=True)
class Wrq(Message):
    """Write request (upload)."""

    path: str
    tsize: int
    blksize: int | None = None
    timeout: int | None = None
    mtime: int | None = None
    channel: int = field(default=FILE_CHANNEL, init=False)
    opcode: ClassVar[int] = FileOp.WRQ

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Wrq:
        tsize = reader.require(3, int, "tsize")
        if tsize < 0:
            raise ProtocolError(
                ProtocolErrorKind.INVALID_FIELD, "negative tsize", channel=reader.channel
            )
        return cls(
            path=reader.require(2, str, "path"),
            tsize=tsize,
            blksize=reader.optional(4, int, "blksize"),
            timeout=reader.optional(5, int, "timeout"),
            mtime=reader.optional(6, int, "mtime"),
        )

    def to_fields(self) -> list[Any]:
        return _trim(
            [
                self.channel,
                int(self.opcode),
                self.path,
                self.tsize,
                self.blksize,
                self.timeout,
                self.mtime,
            ]
        )


@dataclass(frozen=True)
class Data(Message):
    block: int
    data: bytes
    channel: int = field(default=FILE_CHANNEL, init=False)
    opcode: ClassVar[int] = FileOp.DATA

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Data:
        return cls(block=_block(reader, 2), data=reader.require(3, bytes, "data"))

    def to_fields(self) -> list[Any]:
        return [self.channel, int(self.opcode), self.block, self.data]


@dataclass(frozen=True)
class Ack(Message):
    """Block acknowledgement. Block 0 carries the negotiated options."""

    block: int
    tsize: int | None = None
    blksize: int | None = None
    timeout: int | None = None
    mtime: int | None = None
    mode: int | None = None
    channel: int = field(default=FILE_CHANNEL, init=False)
    opcode: ClassVar[int] = FileOp.ACK

    @classmethod
    def from_fields(cls, reader: FieldReader) -> Ack:
        return cls(
            block=_block(reader, 2),
            tsize=reader.optional(3, int, "tsize"),
            blksize=reader.optional(4, int, "blksize"),
            timeout=reader.optional(5, int, "timeout"),
            mtime=reader.optional(6, int, "mtime"),
            mode=reader.optional(7, int, "mode"),
        )

    def to_fields(self) -> list[Any]:
        return _trim(
            [
                self.channel,
                int(self.opcode),
                self.block,
                self.tsize,
                self.blksize,
                self.timeout,
                self.mtime,
                self.mode,
            ]
        )


@dataclass(frozen=True)
class FileError(Message):
    code: int
    message: str | None = None
    channel: int = field(default=FILE_CHANNEL, init=False)
    opcode: ClassVar[int] = FileOp.ERROR

    @classmethod
    def from_fields(cls, reader: FieldReader) -> FileError:
        return cls(
            code=reader.require(2, int, "code"),
            message=reader.optional(3, str, "message"),
        )

    def to_fields(self) -> list[Any]:
        return _trim([self.channel, int(self.opcode), self.code, self.message])


# =============================================================================
# Custom channels
# =============================================================================


@dataclass(frozen=True)
class Custom(Message):
    """Verbatim message on channels 24-254."""

    channel: int
    fields: tuple[Any, ...] = ()

    def to_fields(self) -> list[Any]:
        return [self.channel, *self.fields]


# =============================================================================
# Parsing
# =============================================================================

_REQUESTS: dict[ChannelClass, dict[int, type[Message]]] = {
    ChannelClass.EVENT: {EventOp.AUTH: Auth},
    ChannelClass.EXECUTION: {ExecOp.EXE: Exe, ExecOp.INT: Int, ExecOp.RST: Rst},
    ChannelClass.FILE: {
        FileOp.RRQ: Rrq,
        FileOp.WRQ: Wrq,
        FileOp.DATA: Data,
        FileOp.ACK: Ack,
        FileOp.ERROR: FileError,
    },
}

_REPLIES: dict[ChannelClass, dict[int, type[Message]]] = {
    ChannelClass.EVENT: {
        EventOp.AUTH_OK: AuthOk,
        EventOp.AUTH_FAIL: AuthFail,
        EventOp.INFO: Info,
        EventOp.LOG: Log,
    },
    ChannelClass.EXECUTION: {
        ExecReplyOp.RES: Res,
        ExecReplyOp.CON: Con,
        ExecReplyOp.PRO: Pro,
        ExecReplyOp.COM: Com,
    },
    ChannelClass.FILE: {
        FileOp.DATA: Data,
        FileOp.ACK: Ack,
        FileOp.ERROR: FileError,
    },
}


def parse_request(fields: Sequence[Any]) -> Message:
    """Parse a client-to-server message.

    Args:
        fields: Decoded positional fields.

    Returns:
        The validated message variant.

    Raises:
        ProtocolError: On a bad channel, unknown opcode or bad field.
    """
    return _parse(fields, _REQUESTS, _REPLIES)


def parse_reply(fields: Sequence[Any]) -> Message:
    """Parse a server-to-client message."""
    return _parse(fields, _REPLIES, _REQUESTS)


def _parse(
    fields: Sequence[Any],
    table: dict[ChannelClass, dict[int, type[Message]]],
    other: dict[ChannelClass, dict[int, type[Message]]],
) -> Message:
    if not fields:
        raise ProtocolError(ProtocolErrorKind.INVALID_CHANNEL, "empty message")
    channel = validate_channel(fields[0])
    kind = channel_class(channel)
    reader = FieldReader(fields, channel)

    if kind is ChannelClass.CUSTOM:
        return Custom(channel=channel, fields=reader.rest(1))

    opcode = reader.require(1, int, "opcode")
    message_type = table[kind].get(opcode)
    if message_type is None:
        if opcode in other[kind]:
            raise ProtocolError(ProtocolErrorKind.DIRECTION, f"opcode {opcode}", channel=channel)
        raise ProtocolError(ProtocolErrorKind.UNKNOWN_OPCODE, f"opcode {opcode}", channel=channel)
    return message_type.from_fields(reader)
