"""Tests for PythonExecutor."""

from __future__ import annotations

import asyncio
import marshal

import pytest

from webrepl.core.messages import ExecFormat, ResetMode
from webrepl.server.handlers.python_executor import PythonExecutor
from webrepl.server.protocols import Candidates, Completion, Continuation, Output


async def collect(executor, data, format=ExecFormat.SOURCE):
    return [event async for event in executor.submit(data, format)]


def output_of(events) -> str:
    return "".join(e.data for e in events if isinstance(e, Output))


class TestSource:
    """Tests for source submissions."""

    @pytest.mark.asyncio
    async def test_print(self):
        events = await collect(PythonExecutor(1), "print(1)\n")
        assert events == [Output("1\n"), Completion(ok=True)]

    @pytest.mark.asyncio
    async def test_expression_is_echoed(self):
        """Expression statements print their repr, like the prompt."""
        events = await collect(PythonExecutor(1), "1 + 1\n")
        assert output_of(events) == "2\n"

    @pytest.mark.asyncio
    async def test_namespace_persists(self):
        executor = PythonExecutor(1)
        await collect(executor, "x = 5\n")
        events = await collect(executor, "print(x * 2)\n")
        assert output_of(events) == "10\n"

    @pytest.mark.asyncio
    async def test_channels_have_separate_namespaces(self):
        first, second = PythonExecutor(1), PythonExecutor(2)
        await collect(first, "x = 5\n")
        events = await collect(second, "x\n")
        assert events[-1].ok is False
        assert "NameError" in events[-1].error

    @pytest.mark.asyncio
    async def test_continuation(self):
        """Compound statements wait for a blank line."""
        executor = PythonExecutor(1)
        assert await collect(executor, "for i in range(2):\n") == [Continuation()]
        assert await collect(executor, "    print(i)\n") == [Continuation()]
        assert executor.pending_input == "for i in range(2):\n    print(i)\n"

        events = await collect(executor, "\n")
        assert output_of(events) == "0\n1\n"
        assert events[-1] == Completion(ok=True)
        assert executor.pending_input == ""

    @pytest.mark.asyncio
    async def test_multiple_statements(self):
        """A pasted block of statements runs as a whole."""
        events = await collect(PythonExecutor(1), "a = 1\nb = 2\nprint(a + b)\n")
        assert output_of(events) == "3\n"

    @pytest.mark.asyncio
    async def test_blank_input(self):
        assert await collect(PythonExecutor(1), "\n") == [Completion(ok=True)]

    @pytest.mark.asyncio
    async def test_exception_traceback(self):
        """Tracebacks start at the submitted code."""
        events = await collect(PythonExecutor(1), "1 / 0\n")
        completion = events[-1]
        assert completion.ok is False
        assert completion.error.startswith("Traceback")
        assert '<stdin>' in completion.error
        assert completion.error.endswith("ZeroDivisionError: division by zero")
        assert "python_executor" not in completion.error

    @pytest.mark.asyncio
    async def test_syntax_error(self):
        events = await collect(PythonExecutor(1), "1 +* 2\n")
        assert events[-1].ok is False
        assert events[-1].error.startswith("SyntaxError")

    @pytest.mark.asyncio
    async def test_output_before_error_is_kept(self):
        events = await collect(PythonExecutor(1), "print('a'); raise ValueError('b')\n")
        assert output_of(events) == "a\n"
        assert events[-1].error.endswith("ValueError: b")

    @pytest.mark.asyncio
    async def test_partial_line_is_flushed(self):
        events = await collect(PythonExecutor(1), "print('no newline', end='')\n")
        assert output_of(events) == "no newline"

    @pytest.mark.asyncio
    async def test_stderr_is_captured(self):
        events = await collect(PythonExecutor(1), "import sys; print('err', file=sys.stderr)\n")
        assert output_of(events) == "err\n"

    @pytest.mark.asyncio
    async def test_system_exit(self):
        events = await collect(PythonExecutor(1), "raise SystemExit(3)\n")
        assert events[-1] == Completion(ok=False, error="SystemExit: 3")

    @pytest.mark.asyncio
    async def test_bytes_source(self):
        events = await collect(PythonExecutor(1), b"print('b')\n")
        assert output_of(events) == "b\n"


class TestTopLevelAwait:
    """Tests for coroutine submissions."""

    @pytest.mark.asyncio
    async def test_await(self):
        executor = PythonExecutor(1)
        await collect(executor, "x = await asyncio.sleep(0, result=3)\n")
        events = await collect(executor, "print(x)\n")
        assert output_of(events) == "3\n"

    @pytest.mark.asyncio
    async def test_await_output(self):
        events = await collect(PythonExecutor(1), "await asyncio.sleep(0); print('done')\n")
        assert events == [Output("done\n"), Completion(ok=True)]


class TestCompletion:
    """Tests for tab completion."""

    @pytest.mark.asyncio
    async def test_candidates_from_namespace(self):
        executor = PythonExecutor(1)
        await collect(executor, "value_one = 1\n")
        events = await collect(executor, "print(value_\t")
        assert events == [Candidates(("value_one",))]

    @pytest.mark.asyncio
    async def test_no_prefix(self):
        assert await collect(PythonExecutor(1), "(\t") == [Candidates(())]

    def test_attribute_completion(self):
        candidates = PythonExecutor(1).complete("asyncio.slee")
        assert "asyncio.sleep(" in candidates


class TestBytecode:
    """Tests for precompiled submissions."""

    @pytest.mark.asyncio
    async def test_marshalled_code(self):
        payload = marshal.dumps(compile("print('bc')", "<stdin>", "exec"))
        events = await collect(PythonExecutor(1), payload, ExecFormat.BYTECODE)
        assert events == [Output("bc\n"), Completion(ok=True)]

    @pytest.mark.asyncio
    async def test_invalid_bytecode(self):
        events = await collect(PythonExecutor(1), b"\x00garbage", ExecFormat.BYTECODE)
        assert len(events) == 1
        assert events[0].ok is False

    @pytest.mark.asyncio
    async def test_marshalled_non_code(self):
        events = await collect(PythonExecutor(1), marshal.dumps(42), ExecFormat.BYTECODE)
        assert events == [Completion(ok=False, error="ValueError: payload is not a code object")]

    @pytest.mark.asyncio
    async def test_text_payload(self):
        events = await collect(PythonExecutor(1), "print(1)", ExecFormat.BYTECODE)
        assert events == [Completion(ok=False, error="TypeError: bytecode payload must be bytes")]


class TestInterruptAndReset:
    """Tests for interrupt() and reset()."""

    @pytest.mark.asyncio
    async def test_interrupt_busy_loop(self):
        """A CPU-bound loop in the worker thread is interrupted."""
        executor = PythonExecutor(1)
        task = asyncio.create_task(collect(executor, "while True:\n    pass\n\n"))
        for _ in range(500):
            if executor._worker_thread is not None:
                break
            await asyncio.sleep(0.01)

        await executor.interrupt()
        events = await asyncio.wait_for(task, timeout=5)
        assert events[-1] == Completion(ok=False, error="KeyboardInterrupt")

    @pytest.mark.asyncio
    async def test_interrupt_await(self):
        """A pending await is cancelled."""
        executor = PythonExecutor(1)
        task = asyncio.create_task(collect(executor, "await asyncio.sleep(30)\n"))
        await asyncio.sleep(0.05)

        await executor.interrupt()
        events = await asyncio.wait_for(task, timeout=5)
        assert events[-1] == Completion(ok=False, error="KeyboardInterrupt")

    @pytest.mark.asyncio
    async def test_interrupt_idle_is_noop(self):
        executor = PythonExecutor(1)
        await executor.interrupt()
        assert await collect(executor, "print(1)\n") == [Output("1\n"), Completion(ok=True)]

    @pytest.mark.asyncio
    async def test_reset_clears_namespace(self):
        executor = PythonExecutor(1)
        await collect(executor, "x = 5\n")
        await executor.reset(ResetMode.SOFT)
        events = await collect(executor, "x\n")
        assert "NameError" in events[-1].error

    @pytest.mark.asyncio
    async def test_reset_clears_pending_input(self):
        executor = PythonExecutor(1)
        await collect(executor, "if True:\n")
        await executor.reset(ResetMode.SOFT)
        assert executor.pending_input == ""
        assert await collect(executor, "print(2)\n") == [Output("2\n"), Completion(ok=True)]


LATE_PRINTER = "async def later():\n    await asyncio.sleep(0.05)\n    print('late')\n\n"


class TestUnsolicitedOutput:
    """Tests for output produced after a submission finished."""

    @pytest.mark.asyncio
    async def test_late_output_goes_to_handler(self):
        received: list[str] = []

        async def handler(text: str) -> None:
            received.append(text)

        executor = PythonExecutor(1, output_handler=handler)
        await collect(executor, LATE_PRINTER)
        await collect(executor, "asyncio.ensure_future(later()); await asyncio.sleep(0)\n")
        await asyncio.sleep(0.3)

        assert "".join(received) == "late\n"

    @pytest.mark.asyncio
    async def test_hard_reset_silences_old_tasks(self):
        received: list[str] = []

        async def handler(text: str) -> None:
            received.append(text)

        executor = PythonExecutor(1, output_handler=handler)
        await collect(executor, LATE_PRINTER)
        await collect(executor, "asyncio.ensure_future(later()); await asyncio.sleep(0)\n")
        await executor.reset(ResetMode.HARD)
        await asyncio.sleep(0.3)

        assert received == []
