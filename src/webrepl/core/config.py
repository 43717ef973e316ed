"""Server configuration.

ServerConfig holds every tunable of the engine and the WebSocket server.
Values come from constructor arguments, then WEBREPL_* environment
variables via from_env(), then the defaults below.

Environment Variables:
    WEBREPL_HOST, WEBREPL_PORT, WEBREPL_PATH
    WEBREPL_ROOT: Directory served to file transfers
    WEBREPL_PASSWORD, WEBREPL_USERNAME
    WEBREPL_MAX_BLOCK_SIZE, WEBREPL_TIMEOUT_MS, WEBREPL_MAX_RETRIES
    WEBREPL_MAX_PROTOCOL_ERRORS
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any

DEFAULT_BLOCK_SIZE = 4096
MIN_BLOCK_SIZE = 8
DEFAULT_TIMEOUT_MS = 5000
MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 60000

SUBPROTOCOL = "webrepl.binary.v1"

_ENV_PREFIX = "WEBREPL_"
_ENV_NAMES = {
    "host": "HOST",
    "port": "PORT",
    "path": "PATH",
    "root": "ROOT",
    "password": "PASSWORD",
    "username": "USERNAME",
    "max_block_size": "MAX_BLOCK_SIZE",
    "default_timeout_ms": "TIMEOUT_MS",
    "max_retries": "MAX_RETRIES",
    "max_protocol_errors": "MAX_PROTOCOL_ERRORS",
}


@dataclass(frozen=True)
class ServerConfig:
    """Engine and server settings.

    Attributes:
        host: Interface to bind.
        port: TCP port.
        path: URL path of the WebSocket endpoint.
        root: Directory exposed to file transfers.
        password: Password accepted by the default authenticator.
        username: Optional username the default authenticator requires.
        default_block_size: Block size when the client does not ask for one.
        max_block_size: Largest block size granted in negotiation.
        default_timeout_ms: Transfer timeout when the client does not ask.
        max_retries: Retransmissions before a stalled transfer fails.
        max_protocol_errors: Protocol errors tolerated per connection.
        max_message_size: Largest inbound message in bytes.
        token_lifetime: Seconds an issued auth token stays valid.
        max_auth_failures: Failures allowed within auth_window seconds.
        auth_window: Rate-limit window in seconds.
    """

    host: str = "127.0.0.1"
    port: int = 8266
    path: str = "/webrepl"
    root: str = "."
    password: str | None = None
    username: str | None = None
    default_block_size: int = DEFAULT_BLOCK_SIZE
    max_block_size: int = 16384
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = 1
    max_protocol_errors: int = 16
    max_message_size: int = 1024 * 1024
    token_lifetime: int = 3600
    max_auth_failures: int = 5
    auth_window: float = 60.0

    def __post_init__(self) -> None:
        if not MIN_BLOCK_SIZE <= self.default_block_size <= self.max_block_size:
            raise ValueError(
                f"default_block_size must be between {MIN_BLOCK_SIZE} and max_block_size"
            )
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if not self.path.startswith("/"):
            raise ValueError("path must start with '/'")

    @classmethod
    def from_env(cls, **overrides: Any) -> ServerConfig:
        """Build a config from WEBREPL_* variables.

        Args:
            **overrides: Explicit values; None values are ignored so CLI
                options left unset fall through to the environment.

        Returns:
            The resulting config.
        """
        types = {f.name: f.type for f in fields(cls)}
        values: dict[str, Any] = {}
        for name, suffix in _ENV_NAMES.items():
            raw = os.environ.get(_ENV_PREFIX + suffix)
            if raw is None:
                continue
            values[name] = int(raw) if types[name] == "int" else raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        if "max_block_size" in values and "default_block_size" not in values:
            values["default_block_size"] = min(DEFAULT_BLOCK_SIZE, values["max_block_size"])
        return cls(**values)

    def with_overrides(self, **changes: Any) -> ServerConfig:
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)
