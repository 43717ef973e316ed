"""Tests for build_engine and engine-wide operations."""

from __future__ import annotations

import pytest
from conftest import RecordingSink, authenticate

from webrepl.core.config import ServerConfig
from webrepl.server.auth import PasswordAuthenticator
from webrepl.server.engine import build_engine
from webrepl.server.handlers.python_executor import PythonExecutor
from webrepl.server.storage import LocalStorage
from webrepl.transport.in_process import InProcessTransport


class FailingSink(RecordingSink):
    async def send(self, data: bytes) -> None:
        raise ConnectionResetError("gone")


class TestBuildEngine:
    """Tests for build_engine."""

    def test_default_collaborators(self, tmp_path):
        engine = build_engine(ServerConfig(password="pw", root=str(tmp_path)))
        assert isinstance(engine.authenticator, PasswordAuthenticator)
        assert isinstance(engine.storage, LocalStorage)
        assert engine.storage.root == tmp_path.resolve()
        assert engine.runtime_factory is PythonExecutor

    def test_auth_settings_from_config(self, tmp_path):
        config = ServerConfig(
            password="pw",
            username="admin",
            root=str(tmp_path),
            token_lifetime=60,
            max_auth_failures=2,
        )
        authenticator = build_engine(config).authenticator
        assert authenticator.username == "admin"
        assert authenticator.token_lifetime == 60
        assert authenticator.max_failures == 2

    def test_password_required(self, tmp_path):
        with pytest.raises(ValueError, match="password"):
            build_engine(ServerConfig(root=str(tmp_path)))

    def test_custom_authenticator_needs_no_password(self, tmp_path):
        authenticator = PasswordAuthenticator("other")
        engine = build_engine(ServerConfig(root=str(tmp_path)), authenticator=authenticator)
        assert engine.authenticator is authenticator

    def test_config_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("WEBREPL_PASSWORD", "envpw")
        monkeypatch.setenv("WEBREPL_ROOT", str(tmp_path))
        engine = build_engine()
        assert engine.config.password == "envpw"


class TestEngine:
    """Tests for connection bookkeeping and broadcasts."""

    @pytest.mark.asyncio
    async def test_open_registers(self, engine):
        first = InProcessTransport()
        second = InProcessTransport()
        first.bind(engine)
        second.bind(engine)
        assert engine.connections == [first.connection, second.connection]

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, engine):
        transports = [InProcessTransport() for _ in range(2)]
        for transport in transports:
            transport.bind(engine)

        await engine.shutdown()

        assert engine.connections == []
        assert all(t.closed for t in transports)
        assert transports[0].close_reason == "Server shutting down"

    @pytest.mark.asyncio
    async def test_broadcast_survives_failed_connection(self, engine):
        """One dead peer does not stop the others from getting LOG."""
        broken = engine.open_connection(FailingSink(), peer="broken")
        broken.mark_authenticated()
        transport = InProcessTransport()
        transport.bind(engine)
        await authenticate(transport)

        await engine.broadcast_log(40, "disk full", "storage")

        assert await transport.next_fields() == [0, 5, 40, "disk full", "storage"]

    @pytest.mark.asyncio
    async def test_broadcast_info_payload_is_opaque(self, engine, transport):
        await authenticate(transport)
        payload = {"nested": [1, 2, {"x": None}], "raw": b"\x00\x01"}
        await engine.broadcast_info(payload)
        assert await transport.next_fields() == [0, 3, payload]

