"""Connection - all protocol state for one transport connection.

A Connection is created when the transport is established and closed with
it. It owns:

- the authentication flag (one-way: never reverts without reconnecting)
- the event session, the file-transfer session and the lazily created
  execution sessions
- the output channel: which execution channel unsolicited runtime output is
  attributed to

Inbound messages are processed strictly one at a time, in arrival order.
Long-running commands run in background tasks owned by their execution
session, so processing never waits on them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from webrepl.core import codec
from webrepl.core.config import ServerConfig
from webrepl.core.errors import DecodeError, ErrorCode, ProtocolError, ProtocolErrorKind
from webrepl.core.messages import (
    CUSTOM_ERROR_OPCODE,
    FIRST_EXEC_CHANNEL,
    LAST_EXEC_CHANNEL,
    PRIMARY_EXEC_CHANNEL,
    ResetMode,
    ChannelClass,
    Custom,
    FileError,
    Info,
    Log,
    Message,
    Pro,
    Res,
    channel_class,
)
from webrepl.server.dispatcher import ChannelDispatcher
from webrepl.server.handlers.event_session import EventSession
from webrepl.server.handlers.execution_session import (
    STATUS_ERROR,
    ExecutionSession,
    ExecutionState,
)
from webrepl.server.handlers.transfer_session import (
    TransferMachine,
    TransferSession,
    TransferState,
)

if TYPE_CHECKING:
    from webrepl.server.protocols import (
        Authenticator,
        CustomChannelHandler,
        MessageSink,
        RuntimeFactory,
        Storage,
    )

logger = logging.getLogger(__name__)

T = TypeVar("T")

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_POLICY_VIOLATION = 1008


@dataclass(eq=False)
class Connection:
    """Protocol engine state for one client.

    Example:
        >>> connection = Connection(
        ...     sink=sink,
        ...     authenticator=PasswordAuthenticator("secret"),
        ...     storage=LocalStorage("/srv/device"),
        ...     runtime_factory=PythonExecutor,
        ... )
        >>> await connection.receive(codec.encode([0, 0, "secret"]))
    """

    sink: MessageSink
    authenticator: Authenticator
    storage: Storage
    runtime_factory: RuntimeFactory
    config: ServerConfig = field(default_factory=ServerConfig)
    custom_handler: CustomChannelHandler | None = None
    peer: str = "unknown"

    # Set while a channel is busy; None routes unsolicited output to the
    # primary execution channel.
    output_channel: int | None = field(default=None, init=False)

    _authenticated: bool = field(default=False, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)
    _protocol_errors: int = field(default=0, init=False, repr=False)
    _execution_sessions: dict[int, ExecutionSession] = field(
        default_factory=dict, init=False, repr=False
    )
    _inbound_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.dispatcher = ChannelDispatcher()
        self.event_session = EventSession(self, self.authenticator)
        self.transfer_session = TransferSession(
            self, TransferMachine(self.storage, self.config)
        )

    # =========================================================================
    # State
    # =========================================================================

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    def mark_authenticated(self) -> None:
        self._authenticated = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def protocol_errors(self) -> int:
        return self._protocol_errors

    @property
    def transfer(self) -> TransferState | None:
        """The current (or last finished) file transfer."""
        return self.transfer_session.state

    @property
    def execution_sessions(self) -> dict[int, ExecutionSession]:
        return dict(self._execution_sessions)

    def execution_session(self, channel: int) -> ExecutionSession:
        """Get or lazily create the session for an execution channel."""
        if not FIRST_EXEC_CHANNEL <= channel <= LAST_EXEC_CHANNEL:
            raise ValueError(f"Not an execution channel: {channel}")
        session = self._execution_sessions.get(channel)
        if session is None:
            runtime = self.runtime_factory(channel, self.route_output)
            session = ExecutionSession(channel, self, runtime)
            self._execution_sessions[channel] = session
            logger.debug("execution_session_created: peer=%s channel=%d", self.peer, channel)
        return session

    # =========================================================================
    # Inbound
    # =========================================================================

    async def receive(self, data: bytes) -> None:
        """Process one inbound transport message.

        Undecodable data closes the connection: the byte boundary can no
        longer be trusted.
        """
        if self._closed:
            return
        try:
            fields = codec.decode(data, max_size=self.config.max_message_size)
        except DecodeError as e:
            logger.warning("decode_failed: peer=%s error=%s", self.peer, e)
            await self.close(CLOSE_PROTOCOL_ERROR, f"Malformed message: {e.kind.value}")
            return

        async with self._inbound_lock:
            await self.dispatcher.dispatch(self, fields)

    async def run_serialized(self, fn: Callable[[], Awaitable[T]]) -> T | None:
        """Run fn in the inbound processing order (used by timers)."""
        async with self._inbound_lock:
            if self._closed:
                return None
            return await fn()

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, message: Message) -> None:
        """Encode and deliver one message. Dropped once closed."""
        if self._closed:
            return
        data = codec.encode(message.to_fields())
        async with self._send_lock:
            await self.sink.send(data)

    def release_output(self, channel: int) -> None:
        """Pass unsolicited output on to another busy channel once channel finishes."""
        if self.output_channel != channel:
            return
        self.output_channel = next(
            (
                other
                for other, session in self._execution_sessions.items()
                if other != channel and session.state is ExecutionState.BUSY
            ),
            None,
        )

    async def route_output(self, text: str) -> None:
        """Deliver runtime output produced outside any submission."""
        channel = self.output_channel or PRIMARY_EXEC_CHANNEL
        await self.send(Res(channel=channel, data=text))

    async def info(self, payload: Any) -> None:
        """Send an INFO notification, if authenticated."""
        if self._authenticated:
            await self.send(Info(payload=payload))

    async def log(self, level: int, message: str, source: str | None = None) -> None:
        """Send a LOG record, if authenticated."""
        if self._authenticated:
            await self.send(Log(level=level, message=message, source=source))

    async def report_protocol_error(self, error: ProtocolError) -> None:
        """Answer a structurally invalid message on its own channel.

        Closes the connection once max_protocol_errors is exceeded.
        """
        self._protocol_errors += 1
        logger.info(
            "protocol_error: peer=%s channel=%s error=%s count=%d",
            self.peer,
            error.channel,
            error,
            self._protocol_errors,
        )
        await self.report_failure(error.channel, str(error), error.kind)

        if self._protocol_errors > self.config.max_protocol_errors:
            logger.warning("protocol_error_limit: peer=%s", self.peer)
            await self.close(CLOSE_POLICY_VIOLATION, "Too many protocol errors")

    async def report_failure(
        self,
        channel: int | None,
        reason: str,
        kind: ProtocolErrorKind | None = None,
    ) -> None:
        """Send the error indication appropriate to a channel class."""
        if channel is None:
            await self.send(Log(level=logging.ERROR, message=reason, source="protocol"))
            return

        cls = channel_class(channel)
        if cls is ChannelClass.EVENT:
            await self.send(Log(level=logging.ERROR, message=reason, source="protocol"))
        elif cls is ChannelClass.EXECUTION:
            await self.send(Pro(channel=channel, status=STATUS_ERROR, error=reason))
        elif cls is ChannelClass.FILE:
            code = (
                ErrorCode.ACCESS_VIOLATION
                if kind is ProtocolErrorKind.NOT_AUTHENTICATED
                else ErrorCode.ILLEGAL_OPERATION
            )
            await self.send(FileError(code=int(code), message=reason))
        else:
            await self.send(Custom(channel=channel, fields=(CUSTOM_ERROR_OPCODE, reason)))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Tear down all sessions and close the transport. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.info("connection_closed: peer=%s code=%d reason=%s", self.peer, code, reason)

        await self.transfer_session.close()
        for session in self._execution_sessions.values():
            await session.close()
        for session in self._execution_sessions.values():
            await session.runtime.reset(ResetMode.HARD)
        self._execution_sessions.clear()
        self.output_channel = None

        await self.sink.close(code, reason)
