"""ExecutionSession - one REPL conversation per execution channel.

State machine:

    IDLE --EXE--> BUSY --Completion--> IDLE   (PRO)
                       --Continuation-> IDLE  (CON)
                       --Candidates---> IDLE  (COM)
    any  --INT--> unchanged (forwarded to the runtime)
    any  --RST--> IDLE (in-flight command discarded)

The runtime stream is consumed in a background task so the connection
keeps serving other channels while a command runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from webrepl.core.errors import ExecutionError
from webrepl.core.messages import (
    Com,
    Con,
    Exe,
    Int,
    Message,
    Pro,
    Res,
    Rst,
)
from webrepl.server.protocols import Candidates, Completion, Continuation, Output

if TYPE_CHECKING:
    from webrepl.server.connection import Connection
    from webrepl.server.protocols import Runtime

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_ERROR = 1


class ExecutionState(Enum):
    IDLE = auto()
    BUSY = auto()


class ExecutionSession:
    """Execution channel state for one connection.

    Attributes:
        channel: Channel id (1-22).
        runtime: The runtime executing this channel's code.
    """

    def __init__(self, channel: int, connection: Connection, runtime: Runtime) -> None:
        self.channel = channel
        self.connection = connection
        self.runtime = runtime
        self._state = ExecutionState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._current_id: Any = None

    @property
    def state(self) -> ExecutionState:
        return self._state

    async def handle(self, message: Message) -> None:
        if isinstance(message, Exe):
            await self._execute(message)
        elif isinstance(message, Int):
            logger.debug("interrupt: channel=%d state=%s", self.channel, self._state.name)
            await self.runtime.interrupt()
        elif isinstance(message, Rst):
            await self.reset(message.mode)

    async def _execute(self, exe: Exe) -> None:
        if self._state is ExecutionState.BUSY:
            await self.connection.send(
                Pro(channel=self.channel, status=STATUS_ERROR, error="Busy", id=exe.id)
            )
            return

        self._state = ExecutionState.BUSY
        self._current_id = exe.id
        self.connection.output_channel = self.channel
        self._task = asyncio.create_task(self._run(exe))

    async def _run(self, exe: Exe) -> None:
        send = self.connection.send
        terminal: Message | None = None
        try:
            async for event in self.runtime.submit(exe.data, exe.format):
                if isinstance(event, Output):
                    await send(Res(channel=self.channel, data=event.data, id=exe.id))
                elif isinstance(event, Completion):
                    status = STATUS_OK if event.ok else STATUS_ERROR
                    terminal = Pro(
                        channel=self.channel, status=status, error=event.error, id=exe.id
                    )
                    break
                elif isinstance(event, Continuation):
                    terminal = Con(channel=self.channel, id=exe.id)
                    break
                elif isinstance(event, Candidates):
                    terminal = Com(channel=self.channel, candidates=event.items, id=exe.id)
                    break
        except asyncio.CancelledError:
            self._finish()
            raise
        except ExecutionError as e:
            terminal = Pro(channel=self.channel, status=STATUS_ERROR, error=str(e), id=exe.id)
        except Exception as e:
            logger.error("runtime_failed: channel=%d", self.channel, exc_info=True)
            terminal = Pro(
                channel=self.channel,
                status=STATUS_ERROR,
                error=f"{type(e).__name__}: {e}",
                id=exe.id,
            )

        self._finish()
        await send(terminal or Pro(channel=self.channel, status=STATUS_OK, id=exe.id))

    def _finish(self) -> None:
        self._state = ExecutionState.IDLE
        self._task = None
        self.connection.release_output(self.channel)

    async def reset(self, mode: int) -> None:
        """Unconditionally reset the runtime, discarding any running command."""
        discarded_id = self._current_id
        discarded = await self._cancel()
        await self.runtime.reset(mode)
        logger.info("reset: channel=%d mode=%d discarded=%s", self.channel, mode, discarded)
        if discarded:
            await self.connection.send(
                Pro(channel=self.channel, status=STATUS_ERROR, error="Reset", id=discarded_id)
            )

    async def close(self) -> None:
        await self._cancel()

    async def _cancel(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._finish()
        return True
