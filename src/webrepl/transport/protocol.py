"""Transport protocol definitions.

Defines the interfaces that transport adapters implement. Server transports
also act as the MessageSink of every connection they create.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol


class ServerTransport(Protocol):
    """Server-side transport protocol.

    Serves the engine to multiple clients.
    """

    async def serve(self) -> None:
        """Start serving. Blocks until stopped."""
        ...

    async def stop(self) -> None:
        """Stop serving and close every connection."""
        ...


class ClientTransport(Protocol):
    """Client-side transport protocol.

    Used by frontends to talk to a server.
    """

    async def connect(self) -> None:
        """Connect to the server."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the server."""
        ...

    async def send_fields(self, fields: Sequence[Any]) -> None:
        """Encode and send one message."""
        ...

    async def receive_fields(self, timeout: float | None = None) -> list[Any]:
        """Wait for the next decoded message."""
        ...
