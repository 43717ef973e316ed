"""EventSession - authentication handshake on channel 0.

Unauthenticated -> Authenticated is one-way for the life of the connection.
INFO and LOG only ever flow server-to-client; the connection sends them
directly.
"""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import TYPE_CHECKING

from webrepl.__version__ import __version__
from webrepl.core.messages import Auth, AuthFail, AuthOk, Info, Message

if TYPE_CHECKING:
    from webrepl.server.connection import Connection
    from webrepl.server.protocols import Authenticator

logger = logging.getLogger(__name__)


class AuthState(Enum):
    UNAUTHENTICATED = auto()
    AUTHENTICATED = auto()


class EventSession:
    """Handles AUTH for one connection.

    The verdict belongs to the Authenticator, including any rate limiting.
    On success the client gets AUTH_OK followed by a welcome INFO.
    """

    def __init__(self, connection: Connection, authenticator: Authenticator) -> None:
        self.connection = connection
        self.authenticator = authenticator
        self._token: str | None = None
        self._expires: int | None = None

    @property
    def state(self) -> AuthState:
        if self.connection.authenticated:
            return AuthState.AUTHENTICATED
        return AuthState.UNAUTHENTICATED

    async def handle(self, message: Message) -> None:
        if isinstance(message, Auth):
            await self._authenticate(message)

    async def _authenticate(self, auth: Auth) -> None:
        if self.state is AuthState.AUTHENTICATED:
            await self.connection.send(AuthOk(token=self._token, expires=self._expires))
            return

        result = await self.authenticator.verify(auth.password, auth.username)
        if not result.ok:
            logger.warning(
                "auth_failed: peer=%s reason=%s", self.connection.peer, result.reason
            )
            await self.connection.send(AuthFail(reason=result.reason))
            return

        self._token = result.token
        self._expires = result.expires
        self.connection.mark_authenticated()
        logger.info("auth_ok: peer=%s user=%s", self.connection.peer, auth.username)
        await self.connection.send(AuthOk(token=result.token, expires=result.expires))
        await self.connection.send(Info(payload={"server": "webrepl", "version": __version__}))
