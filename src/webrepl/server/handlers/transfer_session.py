"""File transfer over channel 23 - a TFTP-derived block state machine.

Two layers:

    TransferMachine  Transitions. Each takes the current TransferState (or
                     None) and a message, performs the storage I/O the
                     transition needs, and returns a TransferStep holding the
                     new state and the messages to send. No timers, no
                     transport.
    TransferSession  Binds a machine to a Connection: owns the single
                     transfer slot, sends the outbound messages and runs the
                     retransmission timer.

Upload:    WRQ -> ACK(0) -> DATA(1) -> ACK(1) -> ... -> short DATA(n) -> ACK(n)
Download:  RRQ -> ACK(0, metadata) -> ACK(0) -> DATA(1) -> ACK(1) -> ...
           -> short DATA(n) -> ACK(n)

A block shorter than the negotiated size ends the transfer. Block 65535 is
the last representable block and ends the transfer whatever its length.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from webrepl.core.config import (
    MAX_TIMEOUT_MS,
    MIN_BLOCK_SIZE,
    MIN_TIMEOUT_MS,
    ServerConfig,
)
from webrepl.core.errors import ErrorCode, TransferError
from webrepl.core.messages import (
    MAX_BLOCK_NUMBER,
    Ack,
    Data,
    FileError,
    Message,
    Rrq,
    Wrq,
)

if TYPE_CHECKING:
    from webrepl.server.connection import Connection
    from webrepl.server.protocols import Storage

logger = logging.getLogger(__name__)


class Direction(Enum):
    UPLOAD = auto()
    DOWNLOAD = auto()


class TransferPhase(Enum):
    """Transfer lifecycle states."""

    NEGOTIATING = auto()  # Download offered, waiting for the client's ACK(0)
    TRANSFERRING = auto()  # Blocks flowing
    COMPLETE = auto()  # Final block acknowledged
    FAILED = auto()  # Error, abort or timeout


@dataclass(frozen=True)
class TransferState:
    """The one live transfer of a connection.

    Attributes:
        direction: Upload (WRQ) or download (RRQ).
        path: Storage path.
        blksize: Negotiated block size, fixed for the whole transfer.
        timeout_ms: Negotiated retransmission timeout.
        phase: Lifecycle state.
        block: Upload: next expected block. Download: last block sent.
        tsize: Total size in bytes.
        transferred: Bytes written or read so far.
        mtime: Modification time to apply after an upload.
        handle: Open storage handle, None once closed.
        last_sent: Last outbound message, for retransmission.
        retries: Retransmissions since the last progress.
        final_block: Download: number of the final DATA once it was sent.
    """

    direction: Direction
    path: str
    blksize: int
    timeout_ms: int
    phase: TransferPhase
    block: int
    tsize: int
    transferred: int = 0
    mtime: int | None = None
    handle: Any = None
    last_sent: Message | None = None
    retries: int = 0
    final_block: int | None = None

    @property
    def is_active(self) -> bool:
        return self.phase in (TransferPhase.NEGOTIATING, TransferPhase.TRANSFERRING)


@dataclass(frozen=True)
class TransferStep:
    """Result of one transition.

    `arm` is False for replies that must leave the running transfer and
    its retransmission timer untouched.
    """

    state: TransferState | None
    outbound: tuple[Message, ...] = ()
    arm: bool = True


def negotiate_options(
    blksize: int | None,
    timeout: int | None,
    config: ServerConfig,
) -> tuple[int, int]:
    """Clamp requested options to what this server grants.

    Absent or zero values take the configured defaults.

    Returns:
        (block size, timeout in milliseconds)
    """
    if not blksize:
        blksize = config.default_block_size
    if not timeout:
        timeout = config.default_timeout_ms
    blksize = max(MIN_BLOCK_SIZE, min(blksize, config.max_block_size))
    timeout = max(MIN_TIMEOUT_MS, min(timeout, MAX_TIMEOUT_MS))
    return blksize, timeout


def max_transfer_size(blksize: int) -> int:
    """Largest file representable with 16-bit block numbers."""
    return MAX_BLOCK_NUMBER * blksize


def _error(code: ErrorCode, message: str) -> FileError:
    return FileError(code=int(code), message=message)


class TransferMachine:
    """Transfer transitions.

    Example:
        >>> machine = TransferMachine(storage, ServerConfig())
        >>> step = await machine.handle(None, Wrq(path="main.py", tsize=10))
        >>> step.outbound
        (Ack(block=0, tsize=10, blksize=4096, timeout=5000, ...),)
    """

    def __init__(self, storage: Storage, config: ServerConfig) -> None:
        self.storage = storage
        self.config = config

    async def handle(self, state: TransferState | None, message: Message) -> TransferStep:
        """Apply one inbound file-channel message."""
        if isinstance(message, (Wrq, Rrq)):
            if state is not None and state.is_active:
                return TransferStep(
                    state,
                    (_error(ErrorCode.ILLEGAL_OPERATION, "Transfer already in progress"),),
                    arm=False,
                )
            if isinstance(message, Wrq):
                return await self.start_upload(state, message)
            return await self.start_download(state, message)

        if isinstance(message, Data):
            if (
                state is not None
                and state.direction is Direction.UPLOAD
                and state.phase is TransferPhase.COMPLETE
                and message.block == state.block
            ):
                # Final ACK was lost; the file is already committed.
                return TransferStep(state, (Ack(block=message.block),))
            if state is None or not state.is_active or state.direction is not Direction.UPLOAD:
                return TransferStep(
                    state,
                    (_error(ErrorCode.UNKNOWN_TRANSFER_ID, "No upload in progress"),),
                    arm=False,
                )
            return await self.on_data(state, message)

        if isinstance(message, Ack):
            if state is None:
                return TransferStep(
                    state, (_error(ErrorCode.UNKNOWN_TRANSFER_ID, "No download in progress"),)
                )
            if not state.is_active or state.direction is not Direction.DOWNLOAD:
                return TransferStep(state)
            return await self.on_ack(state, message)

        if isinstance(message, FileError):
            return await self.on_peer_error(state, message)

        return TransferStep(
            state, (_error(ErrorCode.ILLEGAL_OPERATION, "Unexpected message"),), arm=False
        )

    # =========================================================================
    # Upload
    # =========================================================================

    async def start_upload(self, previous: TransferState | None, wrq: Wrq) -> TransferStep:
        blksize, timeout = negotiate_options(wrq.blksize, wrq.timeout, self.config)
        if wrq.tsize > max_transfer_size(blksize):
            return TransferStep(
                previous,
                (
                    _error(
                        ErrorCode.OPTIONS_REJECTED,
                        f"tsize {wrq.tsize} exceeds {max_transfer_size(blksize)}",
                    ),
                ),
            )

        try:
            handle = await self.storage.open_write(wrq.path, wrq.tsize)
        except TransferError as e:
            logger.info("upload_rejected: path=%s code=%s", wrq.path, e.code.name)
            return TransferStep(previous, (_error(e.code, e.message),))

        ack = Ack(block=0, tsize=wrq.tsize, blksize=blksize, timeout=timeout)
        state = TransferState(
            direction=Direction.UPLOAD,
            path=wrq.path,
            blksize=blksize,
            timeout_ms=timeout,
            phase=TransferPhase.TRANSFERRING,
            block=1,
            tsize=wrq.tsize,
            mtime=wrq.mtime,
            handle=handle,
            last_sent=ack,
        )
        logger.info(
            "upload_started: path=%s tsize=%d blksize=%d", wrq.path, wrq.tsize, blksize
        )
        return TransferStep(state, (ack,))

    async def on_data(self, state: TransferState, data: Data) -> TransferStep:
        expected = state.block

        if data.block == expected - 1 and expected > 1:
            # Our ACK was lost and the client resent the block. Acknowledge
            # again without writing.
            logger.debug("duplicate_block: path=%s block=%d", state.path, data.block)
            return TransferStep(state, (Ack(block=data.block),))

        if data.block != expected:
            return await self.fail(
                state,
                ErrorCode.UNKNOWN_TRANSFER_ID,
                f"Expected block {expected}, got {data.block}",
            )

        if len(data.data) > state.blksize:
            return await self.fail(
                state, ErrorCode.ILLEGAL_OPERATION, f"Block larger than {state.blksize}"
            )
        transferred = state.transferred + len(data.data)
        if transferred > state.tsize:
            return await self.fail(
                state, ErrorCode.ILLEGAL_OPERATION, f"Data exceeds tsize {state.tsize}"
            )

        try:
            await state.handle.write(data.data)
        except TransferError as e:
            return await self.fail(state, e.code, e.message)

        ack = Ack(block=data.block)
        final = len(data.data) < state.blksize or data.block == MAX_BLOCK_NUMBER
        if not final:
            new_state = replace(
                state,
                block=expected + 1,
                transferred=transferred,
                last_sent=ack,
                retries=0,
            )
            return TransferStep(new_state, (ack,))

        if transferred != state.tsize:
            return await self.fail(
                state, ErrorCode.ILLEGAL_OPERATION, f"Data short of tsize {state.tsize}"
            )

        try:
            await state.handle.close()
            if state.mtime is not None:
                await self.storage.set_mtime(state.path, state.mtime)
        except TransferError as e:
            return await self.fail(state, e.code, e.message)

        logger.info("upload_complete: path=%s bytes=%d", state.path, transferred)
        new_state = replace(
            state,
            phase=TransferPhase.COMPLETE,
            transferred=transferred,
            handle=None,
            last_sent=ack,
            retries=0,
        )
        return TransferStep(new_state, (ack,))

    # =========================================================================
    # Download
    # =========================================================================

    async def start_download(self, previous: TransferState | None, rrq: Rrq) -> TransferStep:
        blksize, timeout = negotiate_options(rrq.blksize, rrq.timeout, self.config)

        try:
            opened = await self.storage.open_read(rrq.path)
        except TransferError as e:
            logger.info("download_rejected: path=%s code=%s", rrq.path, e.code.name)
            return TransferStep(previous, (_error(e.code, e.message),))

        if opened.size > max_transfer_size(blksize):
            await opened.handle.close()
            return TransferStep(
                previous,
                (
                    _error(
                        ErrorCode.OPTIONS_REJECTED,
                        f"File size {opened.size} exceeds {max_transfer_size(blksize)}",
                    ),
                ),
            )

        ack = Ack(
            block=0,
            tsize=opened.size,
            blksize=blksize,
            timeout=timeout,
            mtime=opened.mtime,
            mode=opened.mode,
        )
        state = TransferState(
            direction=Direction.DOWNLOAD,
            path=rrq.path,
            blksize=blksize,
            timeout_ms=timeout,
            phase=TransferPhase.NEGOTIATING,
            block=0,
            tsize=opened.size,
            mtime=opened.mtime,
            handle=opened.handle,
            last_sent=ack,
        )
        logger.info(
            "download_started: path=%s size=%d blksize=%d", rrq.path, opened.size, blksize
        )
        return TransferStep(state, (ack,))

    async def on_ack(self, state: TransferState, ack: Ack) -> TransferStep:
        if state.phase is TransferPhase.NEGOTIATING:
            if ack.block != 0:
                return TransferStep(state)
            return await self._send_next(replace(state, phase=TransferPhase.TRANSFERRING))

        outstanding = state.block
        if ack.block == outstanding:
            if state.final_block == outstanding:
                logger.info(
                    "download_complete: path=%s bytes=%d", state.path, state.transferred
                )
                return TransferStep(
                    replace(state, phase=TransferPhase.COMPLETE, last_sent=None, retries=0)
                )
            return await self._send_next(state)

        if ack.block == outstanding - 1 and state.last_sent is not None:
            # The client did not see our last DATA.
            return TransferStep(state, (state.last_sent,))

        logger.debug(
            "stale_ack_ignored: path=%s block=%d outstanding=%d",
            state.path,
            ack.block,
            outstanding,
        )
        return TransferStep(state)

    async def _send_next(self, state: TransferState) -> TransferStep:
        block = state.block + 1
        try:
            chunk = await state.handle.read(state.blksize)
        except TransferError as e:
            return await self.fail(state, e.code, e.message)

        data = Data(block=block, data=chunk)
        final = len(chunk) < state.blksize or block == MAX_BLOCK_NUMBER
        handle = state.handle
        if final:
            await handle.close()
            handle = None

        new_state = replace(
            state,
            block=block,
            transferred=state.transferred + len(chunk),
            handle=handle,
            last_sent=data,
            retries=0,
            final_block=block if final else None,
        )
        return TransferStep(new_state, (data,))

    # =========================================================================
    # Failure paths
    # =========================================================================

    async def on_peer_error(self, state: TransferState | None, error: FileError) -> TransferStep:
        """The client aborted the transfer. No reply is sent."""
        if state is None or not state.is_active:
            return TransferStep(state)
        logger.info(
            "transfer_aborted_by_peer: path=%s code=%s message=%s",
            state.path,
            error.code,
            error.message,
        )
        await self.release(state)
        return TransferStep(replace(state, phase=TransferPhase.FAILED, handle=None))

    async def on_timeout(self, state: TransferState | None) -> TransferStep:
        """The peer went quiet for timeout_ms."""
        if state is None or not state.is_active:
            return TransferStep(state)
        if state.retries < self.config.max_retries and state.last_sent is not None:
            logger.debug(
                "transfer_retransmit: path=%s retry=%d", state.path, state.retries + 1
            )
            return TransferStep(replace(state, retries=state.retries + 1), (state.last_sent,))
        logger.warning("transfer_timeout: path=%s", state.path)
        return await self.fail(state, ErrorCode.UNDEFINED, "Timeout")

    async def fail(self, state: TransferState, code: ErrorCode, message: str) -> TransferStep:
        """Release the handle, report ERROR and move to FAILED."""
        logger.info("transfer_failed: path=%s code=%s reason=%s", state.path, code.name, message)
        await self.release(state)
        return TransferStep(
            replace(state, phase=TransferPhase.FAILED, handle=None),
            (_error(code, message),),
        )

    async def release(self, state: TransferState) -> None:
        """Close or abort whatever handle the state still holds."""
        if state.handle is None:
            return
        try:
            if state.direction is Direction.UPLOAD:
                await state.handle.abort()
            else:
                await state.handle.close()
        except TransferError as e:
            logger.warning("release_failed: path=%s error=%s", state.path, e)


class TransferSession:
    """The file channel of one connection.

    Holds the single transfer slot and the retransmission timer. The last
    finished transfer stays visible in `state` until a new RRQ/WRQ replaces
    it.
    """

    def __init__(self, connection: Connection, machine: TransferMachine) -> None:
        self.connection = connection
        self.machine = machine
        self._state: TransferState | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._timeout_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> TransferState | None:
        return self._state

    async def handle(self, message: Message) -> None:
        step = await self.machine.handle(self._state, message)
        await self._apply(step)

    async def on_timeout(self) -> None:
        """Run the timeout transition (normally driven by the timer)."""
        step = await self.machine.on_timeout(self._state)
        await self._apply(step)

    async def _expire(self, armed_for: TransferState) -> None:
        # Traffic queued ahead of the timer may already have moved the transfer on.
        if self._state is not armed_for:
            return
        await self.on_timeout()

    async def close(self) -> None:
        """Stop the timer and release an unfinished transfer."""
        self._cancel_timer()
        if self._timeout_task is not None and not self._timeout_task.done():
            self._timeout_task.cancel()
        state = self._state
        if state is not None and state.is_active:
            await self.machine.release(state)
            self._state = replace(state, phase=TransferPhase.FAILED, handle=None)

    async def _apply(self, step: TransferStep) -> None:
        self._state = step.state
        for message in step.outbound:
            await self.connection.send(message)

        state = self._state
        if state is None or not state.is_active:
            self._cancel_timer()
        elif step.outbound and step.arm:
            self._arm_timer(state)

    def _arm_timer(self, state: TransferState) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(state.timeout_ms / 1000, self._on_timer, state)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, armed_for: TransferState) -> None:
        self._timer = None
        self._timeout_task = asyncio.ensure_future(
            self.connection.run_serialized(lambda: self._expire(armed_for))
        )
