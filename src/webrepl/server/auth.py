"""PasswordAuthenticator - the default Authenticator.

Checks a single configured password (and optional username), issues an
opaque session token and rate-limits failed attempts.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections import deque
from collections.abc import Callable

from webrepl.server.protocols import AuthResult

logger = logging.getLogger(__name__)


class PasswordAuthenticator:
    """Shared-password authentication with a sliding-window rate limit.

    Attributes:
        max_failures: Failed attempts allowed within window seconds. Further
            attempts are refused without checking the password.
    """

    def __init__(
        self,
        password: str,
        username: str | None = None,
        token_lifetime: int = 3600,
        max_failures: int = 5,
        window: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not password:
            raise ValueError("password is required")
        self.password = password
        self.username = username
        self.token_lifetime = token_lifetime
        self.max_failures = max_failures
        self.window = window
        self._clock = clock
        self._failures: deque[float] = deque()

    async def verify(self, password: str, username: str | None = None) -> AuthResult:
        now = self._clock()
        while self._failures and now - self._failures[0] > self.window:
            self._failures.popleft()

        if len(self._failures) >= self.max_failures:
            logger.warning("auth_rate_limited: failures=%d", len(self._failures))
            return AuthResult(ok=False, reason="rate limited")

        password_ok = hmac.compare_digest(password.encode(), self.password.encode())
        username_ok = self.username is None or hmac.compare_digest(
            (username or "").encode(), self.username.encode()
        )
        if not (password_ok and username_ok):
            self._failures.append(now)
            return AuthResult(ok=False, reason="invalid credentials")

        return AuthResult(
            ok=True,
            token=secrets.token_hex(16),
            expires=int(now) + self.token_lifetime,
        )
