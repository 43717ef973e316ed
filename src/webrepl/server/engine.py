"""WebReplEngine - connection registry and collaborator wiring.

The engine owns the collaborators shared by every connection (authenticator,
storage, runtime factory, custom channel handler) and the set of live
connections. Transports call open_connection() when a client arrives and
close_connection() when it leaves; everything in between is per-connection.

This layer knows nothing about sockets or HTTP.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from webrepl.core.config import ServerConfig
from webrepl.server.auth import PasswordAuthenticator
from webrepl.server.connection import CLOSE_NORMAL, Connection
from webrepl.server.handlers.python_executor import PythonExecutor
from webrepl.server.log_forwarder import NO_FORWARD
from webrepl.server.protocols import (
    Authenticator,
    CustomChannelHandler,
    MessageSink,
    RuntimeFactory,
    Storage,
)
from webrepl.server.storage import LocalStorage

logger = logging.getLogger(__name__)


@dataclass
class WebReplEngine:
    """Creates connections and fans notifications out to them.

    Example:
        >>> engine = WebReplEngine(
        ...     authenticator=PasswordAuthenticator("secret"),
        ...     storage=LocalStorage("."),
        ... )
        >>> connection = engine.open_connection(sink, peer="10.0.0.5")
        >>> await connection.receive(data)
    """

    authenticator: Authenticator
    storage: Storage
    config: ServerConfig = field(default_factory=ServerConfig)
    runtime_factory: RuntimeFactory = PythonExecutor
    custom_handler: CustomChannelHandler | None = None
    _connections: list[Connection] = field(default_factory=list, repr=False)

    @property
    def connections(self) -> list[Connection]:
        """Live connections, in arrival order."""
        return list(self._connections)

    def open_connection(self, sink: MessageSink, peer: str = "unknown") -> Connection:
        """Create the protocol state for a newly established transport."""
        connection = Connection(
            sink=sink,
            authenticator=self.authenticator,
            storage=self.storage,
            runtime_factory=self.runtime_factory,
            config=self.config,
            custom_handler=self.custom_handler,
            peer=peer,
        )
        self._connections.append(connection)
        logger.info("connection_opened: peer=%s total=%d", peer, len(self._connections))
        return connection

    async def close_connection(
        self,
        connection: Connection,
        code: int = CLOSE_NORMAL,
        reason: str = "",
    ) -> None:
        """Destroy a connection and all of its sessions."""
        if connection in self._connections:
            self._connections.remove(connection)
        await connection.close(code, reason)

    async def broadcast_info(self, payload: Any) -> None:
        """Send INFO to every authenticated connection."""
        await self._broadcast(lambda c: c.info(payload))

    async def broadcast_log(self, level: int, message: str, source: str | None = None) -> None:
        """Send LOG to every authenticated connection."""
        await self._broadcast(lambda c: c.log(level, message, source))

    async def shutdown(self, reason: str = "Server shutting down") -> None:
        """Close every connection."""
        connections = self.connections
        self._connections.clear()
        for connection in connections:
            await connection.close(CLOSE_NORMAL, reason)

    async def _broadcast(self, send: Any) -> None:
        targets = [c for c in self._connections if c.authenticated and not c.closed]
        if not targets:
            return
        results = await asyncio.gather(*(send(c) for c in targets), return_exceptions=True)
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "broadcast_failed: peer=%s error=%s",
                    connection.peer,
                    result,
                    extra={NO_FORWARD: True},
                )


def build_engine(config: ServerConfig | None = None, **kwargs: Any) -> WebReplEngine:
    """Build an engine with the default collaborators for a config.

    Args:
        config: Server configuration. Defaults to ServerConfig.from_env().
        **kwargs: Override any WebReplEngine field (authenticator, storage,
            runtime_factory, custom_handler).

    Returns:
        A ready engine.

    Raises:
        ValueError: If no authenticator is given and the config has no password.
    """
    if config is None:
        config = ServerConfig.from_env()

    if "authenticator" not in kwargs:
        if not config.password:
            raise ValueError("A password is required (set WEBREPL_PASSWORD or --password)")
        kwargs["authenticator"] = PasswordAuthenticator(
            config.password,
            username=config.username,
            token_lifetime=config.token_lifetime,
            max_failures=config.max_auth_failures,
            window=config.auth_window,
        )
    kwargs.setdefault("storage", LocalStorage(config.root))
    return WebReplEngine(config=config, **kwargs)
