"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from webrepl.core import codec
from webrepl.core.config import ServerConfig
from webrepl.server.auth import PasswordAuthenticator
from webrepl.server.engine import WebReplEngine
from webrepl.server.protocols import Completion, Output
from webrepl.server.storage import LocalStorage
from webrepl.transport.in_process import InProcessTransport

PASSWORD = "secret"


class RecordingSink:
    """MessageSink that keeps decoded outbound messages."""

    def __init__(self):
        self.sent: list[list[Any]] = []
        self.closed: tuple[int, str] | None = None

    async def send(self, data: bytes) -> None:
        self.sent.append(codec.decode(data))

    async def close(self, code: int, reason: str) -> None:
        self.closed = (code, reason)

    def take(self) -> list[list[Any]]:
        sent, self.sent = self.sent, []
        return sent


class ScriptedRuntime:
    """Runtime double that replays a canned event script.

    An asyncio.Event in the script pauses the submission until it is set.
    """

    def __init__(self, channel: int, output_handler=None):
        self.channel = channel
        self.output_handler = output_handler
        self.script: list[Any] = [Output("1\n"), Completion(ok=True)]
        self.submissions: list[tuple[Any, int]] = []
        self.interrupts = 0
        self.resets: list[int] = []

    async def submit(self, data, format):
        self.submissions.append((data, format))
        for item in self.script:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    async def interrupt(self) -> None:
        self.interrupts += 1

    async def reset(self, mode: int) -> None:
        self.resets.append(mode)


class ScriptedRuntimes:
    """RuntimeFactory that remembers the runtime created for each channel."""

    def __init__(self):
        self.by_channel: dict[int, ScriptedRuntime] = {}

    def __call__(self, channel, output_handler):
        runtime = ScriptedRuntime(channel, output_handler)
        self.by_channel[channel] = runtime
        return runtime


async def authenticate(transport: InProcessTransport) -> None:
    """Authenticate and consume AUTH_OK plus the welcome INFO."""
    await transport.send_fields([0, 0, PASSWORD])
    auth_ok = await transport.next_fields()
    assert auth_ok[:2] == [0, 1]
    info = await transport.next_fields()
    assert info[:2] == [0, 3]


@pytest.fixture
def config(tmp_path):
    """Server config rooted at a temporary directory."""
    return ServerConfig(password=PASSWORD, root=str(tmp_path))


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path)


@pytest.fixture
def runtimes():
    return ScriptedRuntimes()


@pytest.fixture
def engine(config, storage, runtimes):
    """Engine with scripted runtimes."""
    return WebReplEngine(
        authenticator=PasswordAuthenticator(PASSWORD),
        storage=storage,
        config=config,
        runtime_factory=runtimes,
    )


@pytest.fixture
def python_engine(config, storage):
    """Engine with the real Python runtime."""
    return WebReplEngine(
        authenticator=PasswordAuthenticator(PASSWORD),
        storage=storage,
        config=config,
    )


@pytest.fixture
def transport(engine):
    """In-process transport bound to the scripted engine."""
    transport = InProcessTransport()
    transport.bind(engine)
    return transport
