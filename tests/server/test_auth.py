"""Tests for PasswordAuthenticator."""

from __future__ import annotations

import pytest

from webrepl.server.auth import PasswordAuthenticator


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPasswordAuthenticator:
    """Tests for credential checks, tokens and rate limiting."""

    def test_password_required(self):
        """An empty password is a configuration error."""
        with pytest.raises(ValueError):
            PasswordAuthenticator("")

    @pytest.mark.asyncio
    async def test_valid_password(self):
        """A correct password yields a token that expires after the lifetime."""
        clock = FakeClock(1000.0)
        auth = PasswordAuthenticator("pw", token_lifetime=60, clock=clock)
        result = await auth.verify("pw")
        assert result.ok
        assert result.expires == 1060
        assert result.token

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self):
        """Every success issues a fresh token."""
        auth = PasswordAuthenticator("pw")
        first = await auth.verify("pw")
        second = await auth.verify("pw")
        assert first.token != second.token

    @pytest.mark.asyncio
    async def test_invalid_password(self):
        """A wrong password is refused with a reason."""
        result = await PasswordAuthenticator("pw").verify("nope")
        assert not result.ok
        assert result.reason == "invalid credentials"
        assert result.token is None

    @pytest.mark.asyncio
    async def test_username_checked_when_configured(self):
        """A configured username must match too."""
        auth = PasswordAuthenticator("pw", username="admin")
        assert not (await auth.verify("pw")).ok
        assert not (await auth.verify("pw", "guest")).ok
        assert (await auth.verify("pw", "admin")).ok

    @pytest.mark.asyncio
    async def test_username_ignored_when_not_configured(self):
        """Without a configured username, any username is accepted."""
        assert (await PasswordAuthenticator("pw").verify("pw", "anyone")).ok

    @pytest.mark.asyncio
    async def test_rate_limit_window(self):
        """Failures expire after the window."""
        clock = FakeClock(1000.0)
        auth = PasswordAuthenticator("pw", max_failures=2, window=10.0, clock=clock)
        await auth.verify("x")
        await auth.verify("x")

        limited = await auth.verify("pw")
        assert limited.reason == "rate limited"

        clock.now += 11
        assert (await auth.verify("pw")).ok
