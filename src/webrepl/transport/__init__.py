"""Transport - communication adapters.

Transports own the byte pipe. Each one creates a Connection per client via
WebReplEngine.open_connection() and acts as that connection's MessageSink.

Available transports:
    InProcessTransport: Direct in-process communication (no network).
    WebSocketServer: aiohttp WebSocket endpoint.
    WebSocketClient: Client side of the protocol over a WebSocket.

Example (in-process):
    >>> from webrepl.transport import InProcessTransport
    >>> from webrepl.server import build_engine
    >>>
    >>> transport = InProcessTransport()
    >>> transport.bind(build_engine(ServerConfig(password="secret")))
    >>> await transport.send_fields([0, 0, "secret"])
    >>> await transport.next_message()

Example (WebSocket server):
    >>> from webrepl.transport import WebSocketServer
    >>> server = WebSocketServer(build_engine(ServerConfig(password="secret")))
    >>> await server.serve()
"""

from webrepl.transport.in_process import InProcessTransport
from webrepl.transport.protocol import ClientTransport, ServerTransport
from webrepl.transport.websocket import (
    ClientError,
    ExecResult,
    WebSocketClient,
    WebSocketServer,
)

__all__ = [
    # Protocols
    "ClientTransport",
    "ServerTransport",
    # Implementations
    "InProcessTransport",
    "WebSocketServer",
    "WebSocketClient",
    "ExecResult",
    "ClientError",
]
