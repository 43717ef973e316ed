"""Server protocols - collaborator interfaces consumed by the engine.

The engine never touches a socket, a filesystem or an interpreter directly.
It talks to these narrow interfaces instead:

    MessageSink    Transport side of one connection (bytes out, close).
    Runtime        Executes submitted code for one execution channel.
    Storage        Opens files for block transfer.
    Authenticator  Verifies AUTH credentials.
    CustomChannelHandler  Receives channels 24-254 verbatim.

Default implementations live in webrepl.server.handlers.python_executor,
webrepl.server.storage and webrepl.server.auth.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Union

if TYPE_CHECKING:
    from webrepl.core.messages import Custom
    from webrepl.server.connection import Connection


class MessageSink(Protocol):
    """Outbound half of a transport connection."""

    async def send(self, data: bytes) -> None:
        """Deliver one encoded message to the peer."""
        ...

    async def close(self, code: int, reason: str) -> None:
        """Close the underlying transport."""
        ...


# =============================================================================
# Runtime
# =============================================================================


@dataclass(frozen=True)
class Output:
    """A chunk of streamed command output."""

    data: str | bytes


@dataclass(frozen=True)
class Completion:
    """The command finished. error is set when ok is False."""

    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class Continuation:
    """The submitted input is incomplete; more lines are needed."""


@dataclass(frozen=True)
class Candidates:
    """Tab-completion result."""

    items: tuple[str, ...]


RuntimeEvent = Union[Output, Completion, Continuation, Candidates]

# Receives output the runtime produced outside any submission.
OutputHandler = Callable[[str], Awaitable[None]]


class Runtime(Protocol):
    """Executes code for one execution channel.

    submit() streams zero or more Output events and ends with exactly one
    terminal event (Completion, Continuation or Candidates).
    """

    def submit(self, data: str | bytes, format: int) -> AsyncIterator[RuntimeEvent]:
        """Run a payload and stream its events."""
        ...

    async def interrupt(self) -> None:
        """Request cancellation of the running command. No-op when idle."""
        ...

    async def reset(self, mode: int) -> None:
        """Discard all state. mode is a ResetMode value."""
        ...


RuntimeFactory = Callable[[int, OutputHandler], Runtime]


# =============================================================================
# Storage
# =============================================================================


class WriteHandle(Protocol):
    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None:
        """Commit the written data."""
        ...

    async def abort(self) -> None:
        """Discard the written data."""
        ...


class ReadHandle(Protocol):
    async def read(self, size: int) -> bytes: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class ReadResult:
    """An opened file plus the metadata announced in ACK(0)."""

    handle: ReadHandle
    size: int
    mtime: int | None = None
    mode: int | None = None


class Storage(Protocol):
    """File access for block transfers.

    All methods raise TransferError with a TFTP code on failure.
    """

    async def open_write(self, path: str, expected_size: int) -> WriteHandle: ...

    async def open_read(self, path: str) -> ReadResult: ...

    async def set_mtime(self, path: str, mtime: int) -> None: ...


# =============================================================================
# Authentication and custom channels
# =============================================================================


@dataclass(frozen=True)
class AuthResult:
    ok: bool
    token: str | None = None
    expires: int | None = None
    reason: str | None = None


class Authenticator(Protocol):
    async def verify(self, password: str, username: str | None = None) -> AuthResult:
        """Check credentials. Rate limiting is the authenticator's concern."""
        ...


class CustomChannelHandler(Protocol):
    async def handle(self, connection: Connection, message: Custom) -> None:
        """Receive a channel 24-254 message, uninterpreted."""
        ...
