"""Server - stateful protocol engine.

The server layer turns decoded messages into session state changes and
outbound messages. It knows about core, but not about:
- Specific transports (WebSocket, in-process)
- Frontends (CLI)

Classes:
    WebReplEngine: Connection registry and collaborator wiring.
    Connection: All protocol state of one client.
    ChannelDispatcher: Routes messages to sessions by channel.
    MessageSink: Protocol a transport implements for outbound bytes.

Example:
    >>> from webrepl.server import build_engine
    >>>
    >>> class PrintSink:
    ...     async def send(self, data: bytes) -> None:
    ...         print(data)
    ...     async def close(self, code: int, reason: str) -> None:
    ...         pass
    >>>
    >>> engine = build_engine(ServerConfig(password="secret"))
    >>> connection = engine.open_connection(PrintSink())
    >>> await connection.receive(encode([0, 0, "secret"]))
"""

from webrepl.server.connection import Connection
from webrepl.server.dispatcher import ChannelDispatcher
from webrepl.server.engine import WebReplEngine, build_engine
from webrepl.server.log_forwarder import LogForwarder
from webrepl.server.protocols import (
    Authenticator,
    CustomChannelHandler,
    MessageSink,
    Runtime,
    Storage,
)

__all__ = [
    "WebReplEngine",
    "build_engine",
    "Connection",
    "ChannelDispatcher",
    "LogForwarder",
    "MessageSink",
    "Runtime",
    "Storage",
    "Authenticator",
    "CustomChannelHandler",
]
