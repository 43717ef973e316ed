"""PythonExecutor - the default Runtime: executes Python for one channel.

SECURITY BOUNDARY:
- Runs arbitrary code submitted by authenticated clients
- Per-channel namespace isolation (not a sandbox)
- Clear audit point for security reviews

Execution model:
- Input is compiled like the interactive prompt (codeop), so incomplete
  input yields a Continuation and expression statements echo their value.
- Top-level `await` is allowed. Coroutine code runs as a task on the event
  loop; everything else runs in a worker thread so long-running commands do
  not stall the connection.
- Output written to sys.stdout/sys.stderr is routed by a context variable to
  the submission that produced it. Output from tasks that outlive their
  submission goes to the unsolicited output handler.
"""

from __future__ import annotations

import ast
import asyncio
import codeop
import contextvars
import ctypes
import inspect
import logging
import marshal
import re
import rlcompleter
import sys
import threading
import traceback
import types
import weakref
from collections.abc import AsyncIterator, Callable
from typing import Any

from webrepl.core.messages import ExecFormat, ResetMode
from webrepl.server.protocols import (
    Candidates,
    Completion,
    Continuation,
    Output,
    OutputHandler,
    RuntimeEvent,
)

logger = logging.getLogger(__name__)

# A payload ending with this character asks for completions instead of
# execution.
COMPLETION_SENTINEL = "\t"

_COMPLETION_PREFIX = re.compile(r"[\w.]*$")

_current_sink: contextvars.ContextVar[_SubmissionSink | None] = contextvars.ContextVar(
    "webrepl_current_sink", default=None
)


class _SubmissionSink:
    """Collects the output of one submission.

    Line-buffered while the submission runs; after close(), writes are
    handed to the unsolicited callback unbuffered. Safe to write from any
    thread.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[RuntimeEvent],
        on_unsolicited: Callable[[str], None],
    ) -> None:
        self._loop = loop
        self._queue = queue
        self._on_unsolicited: Callable[[str], None] | None = on_unsolicited
        self._lock = threading.Lock()
        self._buffer = ""
        self._closed = False

    def write(self, text: str) -> None:
        with self._lock:
            if self._closed:
                if self._on_unsolicited is not None:
                    self._loop.call_soon_threadsafe(self._on_unsolicited, text)
                return
            self._buffer += text
            cut = self._buffer.rfind("\n") + 1
            if cut:
                chunk, self._buffer = self._buffer[:cut], self._buffer[cut:]
                self._put(Output(chunk))

    def flush(self) -> None:
        with self._lock:
            if self._buffer and not self._closed:
                self._put(Output(self._buffer))
                self._buffer = ""

    def finish(self, completion: Completion) -> None:
        """Flush, close and queue the terminal event."""
        self.flush()
        with self._lock:
            self._closed = True
            self._put(completion)

    def detach(self) -> None:
        """Drop all further output, including unsolicited output."""
        with self._lock:
            self._closed = True
            self._on_unsolicited = None

    def _put(self, event: RuntimeEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)


class _StreamRouter:
    """Replacement for sys.stdout/sys.stderr that follows the submission."""

    def __init__(self, original: Any) -> None:
        self._original = original

    def write(self, text: str) -> int:
        sink = _current_sink.get()
        if sink is None:
            return self._original.write(text)
        sink.write(text)
        return len(text)

    def flush(self) -> None:
        sink = _current_sink.get()
        if sink is None:
            self._original.flush()
        else:
            sink.flush()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._original, name)


def install_stream_router() -> None:
    """Route sys.stdout and sys.stderr through the submission context."""
    if not isinstance(sys.stdout, _StreamRouter):
        sys.stdout = _StreamRouter(sys.stdout)
    if not isinstance(sys.stderr, _StreamRouter):
        sys.stderr = _StreamRouter(sys.stderr)


def _raise_in_thread(thread_id: int, exc_type: type[BaseException]) -> bool:
    """Raise exc_type asynchronously in another Python thread."""
    modified = ctypes.pythonapi.PyThreadState_SetAsyncExc(
        ctypes.c_ulong(thread_id), ctypes.py_object(exc_type)
    )
    return modified == 1


class PythonExecutor:
    """Executes Python code for one execution channel.

    Example:
        >>> executor = PythonExecutor(channel=1)
        >>> async for event in executor.submit("print(1)\\n", ExecFormat.SOURCE):
        ...     print(event)
        Output(data='1\\n')
        Completion(ok=True, error=None)
    """

    def __init__(self, channel: int, output_handler: OutputHandler | None = None) -> None:
        self.channel = channel
        self.output_handler = output_handler
        self._namespace = self._create_default_namespace()
        self._compiler = self._create_compiler()
        self._pending = ""
        self._task: asyncio.Task[None] | None = None
        self._worker_thread: int | None = None
        self._worker_lock = threading.Lock()
        self._sinks: weakref.WeakSet[_SubmissionSink] = weakref.WeakSet()
        self._background: set[asyncio.Task[None]] = set()

    @property
    def namespace(self) -> dict[str, Any]:
        return self._namespace

    @property
    def pending_input(self) -> str:
        """Buffered lines of an incomplete statement."""
        return self._pending

    async def submit(self, data: str | bytes, format: int) -> AsyncIterator[RuntimeEvent]:
        """Run a payload, streaming Output events and one terminal event."""
        if format == ExecFormat.BYTECODE:
            try:
                code = self._load_bytecode(data)
            except (ValueError, EOFError, TypeError) as e:
                yield Completion(ok=False, error=f"{type(e).__name__}: {e}")
                return
        else:
            try:
                text = data.decode("utf-8") if isinstance(data, bytes) else data
            except UnicodeDecodeError as e:
                yield Completion(ok=False, error=f"UnicodeDecodeError: {e}")
                return

            if text.endswith(COMPLETION_SENTINEL):
                yield Candidates(tuple(self.complete(text[: -len(COMPLETION_SENTINEL)])))
                return

            source = self._pending + text
            if not source.strip():
                self._pending = ""
                yield Completion(ok=True)
                return

            try:
                code = self._compile(source)
            except (SyntaxError, ValueError, OverflowError) as e:
                self._pending = ""
                yield Completion(ok=False, error=f"{type(e).__name__}: {e}")
                return

            if code is None:
                self._pending = source if source.endswith("\n") else source + "\n"
                yield Continuation()
                return
            self._pending = ""

        install_stream_router()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[RuntimeEvent] = asyncio.Queue()
        sink = _SubmissionSink(loop, queue, self._emit_unsolicited)
        self._sinks.add(sink)
        task = asyncio.create_task(self._run(code, sink))
        self._task = task

        try:
            while True:
                event = await queue.get()
                yield event
                if isinstance(event, Completion):
                    return
        finally:
            if not task.done():
                self._interrupt()
            if self._task is task:
                self._task = None

    async def interrupt(self) -> None:
        """Interrupt the running command. No-op when idle."""
        self._interrupt()

    def _interrupt(self) -> None:
        # Inject while holding the lock so the exception lands inside
        # _run_in_thread and never in an idle pool thread.
        with self._worker_lock:
            thread_id = self._worker_thread
            if thread_id is not None:
                logger.debug("interrupt_thread: channel=%d thread=%d", self.channel, thread_id)
                _raise_in_thread(thread_id, KeyboardInterrupt)
                return

        task = self._task
        if task is not None and not task.done():
            logger.debug("interrupt_task: channel=%d", self.channel)
            task.cancel()

    async def reset(self, mode: int) -> None:
        """Discard the namespace and pending input.

        A hard reset also silences output from anything the old submissions
        left running.
        """
        self._interrupt()
        self._pending = ""
        self._namespace = self._create_default_namespace()
        self._compiler = self._create_compiler()
        if mode == ResetMode.HARD:
            for sink in self._sinks:
                sink.detach()
            for task in list(self._background):
                task.cancel()

    def complete(self, text: str) -> list[str]:
        """Completion candidates for the last identifier in text."""
        match = _COMPLETION_PREFIX.search(text)
        prefix = match.group(0) if match else ""
        if not prefix:
            return []

        completer = rlcompleter.Completer(self._namespace)
        candidates: list[str] = []
        state = 0
        while True:
            candidate = completer.complete(prefix, state)
            if candidate is None:
                break
            if candidate not in candidates:
                candidates.append(candidate)
            state += 1
        return candidates

    # =========================================================================
    # Internals
    # =========================================================================

    def _create_default_namespace(self) -> dict[str, Any]:
        return {
            "__name__": "__main__",
            "__builtins__": __builtins__,
            "asyncio": asyncio,
        }

    @staticmethod
    def _create_compiler() -> codeop.CommandCompiler:
        compiler = codeop.CommandCompiler()
        compiler.compiler.flags |= ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
        return compiler

    def _compile(self, source: str) -> types.CodeType | None:
        """Compile like the interactive prompt.

        Returns:
            The code object, or None if the input is incomplete.
        """
        try:
            return self._compiler(source, "<stdin>", "single")
        except SyntaxError as e:
            if "multiple statements" not in str(e):
                raise
        # A pasted block of several statements.
        return compile(
            source,
            "<stdin>",
            "exec",
            flags=self._compiler.compiler.flags,
            dont_inherit=True,
        )

    @staticmethod
    def _load_bytecode(data: str | bytes) -> types.CodeType:
        if not isinstance(data, bytes):
            raise TypeError("bytecode payload must be bytes")
        code = marshal.loads(data)
        if not isinstance(code, types.CodeType):
            raise ValueError("payload is not a code object")
        return code

    async def _run(self, code: types.CodeType, sink: _SubmissionSink) -> None:
        try:
            if code.co_flags & inspect.CO_COROUTINE:
                await self._run_coroutine(code, sink)
            else:
                try:
                    await asyncio.to_thread(self._run_in_thread, code, sink)
                finally:
                    with self._worker_lock:
                        self._worker_thread = None
            completion = Completion(ok=True)
        except (asyncio.CancelledError, KeyboardInterrupt):
            completion = Completion(ok=False, error="KeyboardInterrupt")
        except SystemExit as e:
            completion = Completion(ok=False, error=f"SystemExit: {e.code}")
        except Exception as e:
            completion = Completion(ok=False, error=self._format_exception(e))
        sink.finish(completion)

    async def _run_coroutine(self, code: types.CodeType, sink: _SubmissionSink) -> None:
        _current_sink.set(sink)
        func = types.FunctionType(code, self._namespace)
        await func()

    def _run_in_thread(self, code: types.CodeType, sink: _SubmissionSink) -> None:
        _current_sink.set(sink)
        with self._worker_lock:
            self._worker_thread = threading.get_ident()
        try:
            exec(code, self._namespace)
        finally:
            with self._worker_lock:
                self._worker_thread = None

    def _emit_unsolicited(self, text: str) -> None:
        if self.output_handler is None:
            return
        task = asyncio.ensure_future(self.output_handler(text))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _format_exception(error: BaseException) -> str:
        # Drop the executor's own frames, keep the user's.
        tb = error.__traceback__
        while tb is not None and tb.tb_frame.f_code.co_filename != "<stdin>":
            tb = tb.tb_next
        if tb is None:
            tb = error.__traceback__
        lines = traceback.format_exception(type(error), error, tb)
        return "".join(lines).rstrip("\n")
