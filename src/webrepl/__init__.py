"""WebREPL - a multiplexed binary protocol engine for remote REPLs.

One WebSocket carries many logical sessions, each addressed by a channel id
in the first field of every MessagePack array:

    0        Event channel: authentication, INFO and LOG records
    1..22    Execution channels: one independent REPL each
    23       File channel: TFTP-style block transfer
    24..254  Custom channels: passed to an application handler verbatim

Layers:
    core/       Pure protocol logic (codec, messages, errors, config)
    server/     Per-connection engine (dispatcher, sessions, collaborators)
    transport/  Communication adapters (WebSocket, in-process)
    frontends/  User interfaces (CLI)

Quick Start (serve the current directory):
    >>> from webrepl.core.config import ServerConfig
    >>> from webrepl.server import build_engine
    >>> from webrepl.transport import WebSocketServer
    >>>
    >>> config = ServerConfig(password="secret")
    >>> server = WebSocketServer(build_engine(config))
    >>> await server.serve()

Talking to a server:
    >>> from webrepl.transport import WebSocketClient
    >>> async with WebSocketClient("ws://127.0.0.1:8266/webrepl") as client:
    ...     await client.authenticate("secret")
    ...     result = await client.execute("print(1)")
    ...     print(result.output)
"""

from webrepl.__version__ import __version__
from webrepl.core import (
    ServerConfig,
    configure_logging,
    decode,
    encode,
    parse_reply,
    parse_request,
)

__all__ = [
    "__version__",
    # Codec
    "encode",
    "decode",
    "parse_request",
    "parse_reply",
    # Config
    "ServerConfig",
    "configure_logging",
]
