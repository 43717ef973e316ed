"""LogForwarder - mirrors server log records to clients as LOG messages."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from webrepl.server.engine import WebReplEngine

# Records carrying this attribute (via `extra=`) are never forwarded.
NO_FORWARD = "webrepl_no_forward"


class LogForwarder(logging.Handler):
    """Forwards records from the webrepl logger tree to authenticated clients.

    Records may be emitted from any thread; delivery always happens on the
    engine's event loop.

    Example:
        >>> forwarder = LogForwarder(engine, level=logging.WARNING)
        >>> forwarder.install()
        >>> ...
        >>> forwarder.uninstall()
    """

    def __init__(
        self,
        engine: WebReplEngine,
        level: int = logging.INFO,
        logger_name: str = "webrepl",
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        super().__init__(level)
        self.engine = engine
        self.logger_name = logger_name
        self._loop = loop
        self._pending: set[asyncio.Task[None]] = set()
        self.setFormatter(logging.Formatter("%(message)s"))

    def install(self) -> None:
        """Attach to the webrepl logger. Must be called on the engine's loop."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        logging.getLogger(self.logger_name).addHandler(self)

    def uninstall(self) -> None:
        logging.getLogger(self.logger_name).removeHandler(self)
        for task in list(self._pending):
            task.cancel()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, NO_FORWARD, False):
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._forward(record.levelno, message, record.name)
        else:
            loop.call_soon_threadsafe(self._forward, record.levelno, message, record.name)

    def _forward(self, level: int, message: str, source: str) -> None:
        task = asyncio.ensure_future(self.engine.broadcast_log(level, message, source))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
