"""In-process transport - drives a Connection without a network.

Useful for:
- Testing
- Embedding the engine in an application
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from webrepl.core import codec
from webrepl.core.messages import Message, parse_reply

if TYPE_CHECKING:
    from webrepl.server.connection import Connection
    from webrepl.server.engine import WebReplEngine


@dataclass
class InProcessTransport:
    """In-process transport - the client side and the sink in one object.

    Outbound bytes from the engine are decoded and queued; the client side
    reads them with next_fields() or next_message().

    Example:
        >>> transport = InProcessTransport()
        >>> transport.bind(engine)
        >>>
        >>> await transport.send_fields([0, 0, "secret"])
        >>> await transport.next_message()
        AuthOk(token='...', expires=...)
    """

    peer: str = "in-process"
    _engine: WebReplEngine | None = None
    _connection: Connection | None = None
    _queue: asyncio.Queue[list[Any]] = field(default_factory=asyncio.Queue)
    _close_code: int | None = None
    _close_reason: str | None = None

    def bind(self, engine: WebReplEngine) -> Connection:
        """Open a connection on an engine, with this transport as its sink.

        Args:
            engine: The engine to communicate with.

        Returns:
            The new connection.
        """
        self._engine = engine
        self._connection = engine.open_connection(self, peer=self.peer)
        return self._connection

    @property
    def connection(self) -> Connection:
        if self._connection is None:
            raise RuntimeError("Transport not bound to engine")
        return self._connection

    @property
    def closed(self) -> bool:
        return self._close_code is not None

    @property
    def close_code(self) -> int | None:
        return self._close_code

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    # =========================================================================
    # MessageSink (engine -> client)
    # =========================================================================

    async def send(self, data: bytes) -> None:
        await self._queue.put(codec.decode(data))

    async def close(self, code: int, reason: str) -> None:
        self._close_code = code
        self._close_reason = reason

    # =========================================================================
    # Client side
    # =========================================================================

    async def send_raw(self, data: bytes) -> None:
        """Deliver raw bytes, exactly as a transport frame would."""
        await self.connection.receive(data)

    async def send_fields(self, fields: Sequence[Any]) -> None:
        await self.send_raw(codec.encode(fields))

    async def send_message(self, message: Message) -> None:
        await self.send_fields(message.to_fields())

    async def next_fields(self, timeout: float | None = 5.0) -> list[Any] | None:
        """Get the next outbound message as decoded fields.

        Args:
            timeout: Seconds to wait, None to wait forever.

        Returns:
            The fields, or None on timeout.
        """
        try:
            if timeout:
                return await asyncio.wait_for(self._queue.get(), timeout=timeout)
            return await self._queue.get()
        except TimeoutError:
            return None

    async def next_message(self, timeout: float | None = 5.0) -> Message | None:
        """Get the next outbound message as a parsed reply."""
        fields = await self.next_fields(timeout)
        if fields is None:
            return None
        return parse_reply(fields)

    def pending(self) -> list[list[Any]]:
        """Drain and return every queued message without waiting."""
        drained = []
        while not self._queue.empty():
            drained.append(self._queue.get_nowait())
        return drained

    async def disconnect(self) -> None:
        """Close the connection as if the transport went away."""
        if self._engine is not None and self._connection is not None:
            await self._engine.close_connection(self._connection)
