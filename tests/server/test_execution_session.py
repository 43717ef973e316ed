"""Tests for execution channels against a scripted runtime."""

from __future__ import annotations

import asyncio

import pytest
from conftest import authenticate

from webrepl.core.errors import ExecutionError
from webrepl.server.handlers.execution_session import ExecutionState
from webrepl.server.protocols import Candidates, Completion, Continuation, Output


def runtime_for(transport, channel: int = 1):
    return transport.connection.execution_session(channel).runtime


class TestExecute:
    """Tests for EXE and its replies."""

    @pytest.mark.asyncio
    async def test_output_then_prompt(self, transport):
        """Output is streamed as RES, then PRO status 0."""
        await authenticate(transport)
        await transport.send_fields([1, 0, "print(1)\n"])
        assert await transport.next_fields() == [1, 0, "1\n"]
        assert await transport.next_fields() == [1, 2, 0]

        runtime = runtime_for(transport)
        assert runtime.submissions == [("print(1)\n", 0)]
        assert transport.connection.execution_session(1).state is ExecutionState.IDLE

    @pytest.mark.asyncio
    async def test_id_is_echoed(self, transport):
        """A request id comes back on every reply."""
        await authenticate(transport)
        await transport.send_fields([1, 0, "print(1)\n", 0, "r1"])
        assert await transport.next_fields() == [1, 0, "1\n", "r1"]
        assert await transport.next_fields() == [1, 2, 0, None, "r1"]

    @pytest.mark.asyncio
    async def test_bytecode_format_is_passed_through(self, transport):
        """The format field reaches the runtime."""
        await authenticate(transport)
        await transport.send_fields([1, 0, b"\xe3\x00", 1])
        await transport.next_fields()
        await transport.next_fields()
        assert runtime_for(transport).submissions == [(b"\xe3\x00", 1)]

    @pytest.mark.asyncio
    async def test_error_completion(self, transport):
        """A failed completion becomes PRO status 1 with the error text."""
        await authenticate(transport)
        runtime_for(transport).script = [Completion(ok=False, error="NameError: x")]
        await transport.send_fields([1, 0, "x\n"])
        assert await transport.next_fields() == [1, 2, 1, "NameError: x"]

    @pytest.mark.asyncio
    async def test_continuation(self, transport):
        """Incomplete input gets CON."""
        await authenticate(transport)
        runtime_for(transport).script = [Continuation()]
        await transport.send_fields([1, 0, "for i in range(3):\n"])
        assert await transport.next_fields() == [1, 1]

    @pytest.mark.asyncio
    async def test_completion_candidates(self, transport):
        """Candidates become COM."""
        await authenticate(transport)
        runtime_for(transport).script = [Candidates(("print", "property"))]
        await transport.send_fields([1, 0, "pr\t"])
        assert await transport.next_fields() == [1, 3, ["print", "property"]]

    @pytest.mark.asyncio
    async def test_stream_without_terminal_event(self, transport):
        """A stream that just ends counts as success."""
        await authenticate(transport)
        runtime_for(transport).script = [Output("a\n")]
        await transport.send_fields([1, 0, "a\n"])
        assert await transport.next_fields() == [1, 0, "a\n"]
        assert await transport.next_fields() == [1, 2, 0]

    @pytest.mark.asyncio
    async def test_runtime_exception(self, transport):
        """An exception escaping the runtime is reported as PRO status 1."""
        await authenticate(transport)
        runtime_for(transport).script = [RuntimeError("boom")]
        await transport.send_fields([1, 0, "x\n"])
        assert await transport.next_fields() == [1, 2, 1, "RuntimeError: boom"]
        assert transport.connection.execution_session(1).state is ExecutionState.IDLE

    @pytest.mark.asyncio
    async def test_execution_error_message_is_verbatim(self, transport):
        """ExecutionError text is sent without the type name."""
        await authenticate(transport)
        runtime_for(transport).script = [ExecutionError("out of memory")]
        await transport.send_fields([1, 0, "x\n"])
        assert await transport.next_fields() == [1, 2, 1, "out of memory"]

    @pytest.mark.asyncio
    async def test_unknown_format(self, transport):
        """An unknown EXE format is a protocol error on the channel."""
        await authenticate(transport)
        await transport.send_fields([1, 0, "x\n", 7])
        assert await transport.next_fields() == [1, 2, 1, "invalid field: unknown format 7"]


class TestBusy:
    """Tests for concurrent requests."""

    @pytest.mark.asyncio
    async def test_exe_while_busy(self, transport):
        """A second EXE on a busy channel is refused."""
        await authenticate(transport)
        gate = asyncio.Event()
        runtime = runtime_for(transport)
        runtime.script = [gate, Completion(ok=True)]

        await transport.send_fields([1, 0, "slow()\n"])
        await transport.send_fields([1, 0, "fast()\n", 0, 7])
        assert await transport.next_fields() == [1, 2, 1, "Busy", 7]

        gate.set()
        assert await transport.next_fields() == [1, 2, 0]
        assert len(runtime.submissions) == 1

    @pytest.mark.asyncio
    async def test_channels_are_independent(self, transport):
        """A busy channel does not block another one."""
        await authenticate(transport)
        gate = asyncio.Event()
        runtime_for(transport, 1).script = [gate, Completion(ok=True)]

        await transport.send_fields([1, 0, "slow()\n"])
        await transport.send_fields([2, 0, "print(1)\n"])
        assert await transport.next_fields() == [2, 0, "1\n"]
        assert await transport.next_fields() == [2, 2, 0]

        gate.set()
        assert await transport.next_fields() == [1, 2, 0]

    @pytest.mark.asyncio
    async def test_interrupt_is_forwarded(self, transport):
        """INT reaches the runtime and produces no reply of its own."""
        await authenticate(transport)
        await transport.send_fields([1, 1])
        assert runtime_for(transport).interrupts == 1
        assert transport.pending() == []


class TestReset:
    """Tests for RST."""

    @pytest.mark.asyncio
    async def test_reset_idle(self, transport):
        """RST on an idle channel resets silently."""
        await authenticate(transport)
        await transport.send_fields([1, 2, 1])
        assert runtime_for(transport).resets == [1]
        assert transport.pending() == []

    @pytest.mark.asyncio
    async def test_reset_while_busy(self, transport):
        """RST discards the running command and reports it."""
        await authenticate(transport)
        gate = asyncio.Event()
        runtime = runtime_for(transport)
        runtime.script = [gate, Output("late\n"), Completion(ok=True)]

        await transport.send_fields([1, 0, "slow()\n", 0, "r9"])
        await asyncio.sleep(0)
        await transport.send_fields([1, 2])
        assert await transport.next_fields() == [1, 2, 1, "Reset", "r9"]
        assert runtime.resets == [0]

        session = transport.connection.execution_session(1)
        assert session.state is ExecutionState.IDLE
        gate.set()
        await asyncio.sleep(0)
        assert transport.pending() == []

    @pytest.mark.asyncio
    async def test_exe_after_reset(self, transport):
        """The channel accepts new work after a reset."""
        await authenticate(transport)
        gate = asyncio.Event()
        runtime = runtime_for(transport)
        runtime.script = [gate, Completion(ok=True)]
        await transport.send_fields([1, 0, "slow()\n"])
        await transport.send_fields([1, 2])
        await transport.next_fields()

        runtime.script = [Output("1\n"), Completion(ok=True)]
        await transport.send_fields([1, 0, "print(1)\n"])
        assert await transport.next_fields() == [1, 0, "1\n"]
        assert await transport.next_fields() == [1, 2, 0]
