"""WebSocket transport - binary WebREPL frames over aiohttp.

Server:
    GET {config.path}  WebSocket endpoint, one Connection per socket
    GET /health        JSON status

Client:
    WebSocketClient speaks the client side of every channel: AUTH, EXE and
    the TFTP-style put/get on the file channel.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web

from webrepl.__version__ import __version__
from webrepl.core import codec
from webrepl.core.config import SUBPROTOCOL
from webrepl.core.errors import ErrorCode, TransferError, WebReplError
from webrepl.core.messages import (
    EVENT_CHANNEL,
    FILE_CHANNEL,
    MAX_BLOCK_NUMBER,
    PRIMARY_EXEC_CHANNEL,
    Ack,
    Auth,
    AuthFail,
    AuthOk,
    Com,
    Con,
    Data,
    Exe,
    ExecFormat,
    FileError,
    Info,
    Int,
    Log,
    Message,
    Pro,
    Res,
    ResetMode,
    Rrq,
    Rst,
    Wrq,
    parse_reply,
)
from webrepl.server.connection import CLOSE_PROTOCOL_ERROR
from webrepl.server.log_forwarder import LogForwarder

if TYPE_CHECKING:
    from webrepl.server.engine import WebReplEngine

logger = logging.getLogger(__name__)


class _WebSocketSink:
    """MessageSink over one aiohttp WebSocketResponse."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self.ws = ws

    async def send(self, data: bytes) -> None:
        if self.ws.closed:
            return
        try:
            await self.ws.send_bytes(data)
        except ConnectionResetError:
            logger.debug("send_after_disconnect: bytes=%d", len(data))

    async def close(self, code: int, reason: str) -> None:
        # Close reasons are limited to 123 bytes by RFC 6455.
        await self.ws.close(code=code, message=reason.encode()[:123])


@dataclass
class WebSocketServer:
    """WebSocket server transport.

    Example:
        >>> server = WebSocketServer(build_engine(ServerConfig(password="secret")))
        >>> await server.serve()
    """

    engine: WebReplEngine
    forward_log_level: int | None = logging.WARNING
    _runner: web.AppRunner | None = None
    _forwarder: LogForwarder | None = None
    _stopped: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def host(self) -> str:
        return self.engine.config.host

    @property
    def port(self) -> int:
        return self.engine.config.port

    def build_app(self) -> web.Application:
        """Create the aiohttp application (also used by tests)."""
        app = web.Application()
        app.router.add_get(self.engine.config.path, self._handle_websocket)
        app.router.add_get("/health", self._handle_health)
        return app

    async def start(self) -> None:
        """Start listening without blocking."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        if self.forward_log_level is not None:
            self._forwarder = LogForwarder(self.engine, level=self.forward_log_level)
            self._forwarder.install()
        logger.info(
            "server_started: host=%s port=%s path=%s",
            self.host,
            self.port,
            self.engine.config.path,
        )

    async def serve(self) -> None:
        """Start the server and block until stop() is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Close every connection and stop listening."""
        if self._forwarder is not None:
            self._forwarder.uninstall()
            self._forwarder = None
        await self.engine.shutdown()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._stopped.set()
        logger.info("server_stopped")

    async def _handle_websocket(self, request: web.Request) -> web.StreamResponse:
        config = self.engine.config
        ws = web.WebSocketResponse(protocols=(SUBPROTOCOL,), max_msg_size=config.max_message_size)
        await ws.prepare(request)

        peer = request.remote or "unknown"
        if ws.ws_protocol != SUBPROTOCOL:
            logger.debug("subprotocol_not_negotiated: peer=%s", peer)

        connection = self.engine.open_connection(_WebSocketSink(ws), peer=peer)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    await connection.receive(msg.data)
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    await connection.close(CLOSE_PROTOCOL_ERROR, "Binary frames only")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("websocket_error: peer=%s error=%s", peer, ws.exception())
                    break
                if connection.closed:
                    break
        finally:
            await self.engine.close_connection(connection)
        return ws

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "version": __version__,
                "connections": len(self.engine.connections),
            }
        )


# =============================================================================
# Client
# =============================================================================


class ClientError(WebReplError):
    """Raised by WebSocketClient when the server refuses a request."""


@dataclass(frozen=True)
class ExecResult:
    """Outcome of WebSocketClient.execute().

    Attributes:
        output: Concatenated RES output.
        ok: Whether the command completed with status 0.
        error: Error text from PRO when ok is False.
        incomplete: The server asked for more input (CON).
    """

    output: str
    ok: bool
    error: str | None = None
    incomplete: bool = False


@dataclass
class WebSocketClient:
    """WebSocket client transport.

    Example:
        >>> async with WebSocketClient("ws://127.0.0.1:8266/webrepl") as client:
        ...     await client.authenticate("secret")
        ...     await client.put(Path("main.py"), "main.py")
        ...     result = await client.execute("import main")
    """

    url: str
    timeout: float = 30.0
    max_message_size: int = codec.MAX_MESSAGE_SIZE
    notifications: list[Message] = field(default_factory=list)
    _session: aiohttp.ClientSession | None = None
    _ws: aiohttp.ClientWebSocketResponse | None = None
    _ids: Any = field(default_factory=lambda: itertools.count(1))

    async def __aenter__(self) -> WebSocketClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Open the WebSocket."""
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                protocols=(SUBPROTOCOL,),
                max_msg_size=self.max_message_size,
            )
        except aiohttp.ClientError:
            await self._session.close()
            self._session = None
            raise
        logger.debug("client_connected: url=%s", self.url)

    async def disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None

    # =========================================================================
    # Framing
    # =========================================================================

    async def send_fields(self, fields: Sequence[Any]) -> None:
        if self._ws is None:
            raise RuntimeError("Not connected")
        await self._ws.send_bytes(codec.encode(fields))

    async def send_message(self, message: Message) -> None:
        await self.send_fields(message.to_fields())

    async def receive_fields(self, timeout: float | None = None) -> list[Any]:
        """Wait for the next binary frame and decode it.

        Raises:
            ConnectionError: If the server closed the connection.
            TimeoutError: If nothing arrived in time.
        """
        if self._ws is None:
            raise RuntimeError("Not connected")
        while True:
            msg = await self._ws.receive(timeout=timeout or self.timeout)
            if msg.type == aiohttp.WSMsgType.BINARY:
                return codec.decode(msg.data)
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                raise ConnectionError(
                    f"Connection closed (code={self._ws.close_code}, reason={msg.extra})"
                )
            logger.debug("ignored_frame: type=%s", msg.type)

    async def receive(self, channel: int, timeout: float | None = None) -> Message:
        """Wait for the next message on a channel.

        Event-channel notifications seen in the meantime are kept in
        `notifications`.
        """
        while True:
            message = parse_reply(await self.receive_fields(timeout))
            if isinstance(message, (Info, Log)):
                self.notifications.append(message)
                continue
            if message.channel == channel:
                return message
            logger.debug(
                "message_skipped: channel=%d message=%s",
                message.channel,
                type(message).__name__,
            )

    # =========================================================================
    # Event channel
    # =========================================================================

    async def authenticate(self, password: str, username: str | None = None) -> AuthOk:
        """Authenticate the connection.

        Raises:
            ClientError: On AUTH_FAIL.
        """
        await self.send_message(Auth(password=password, username=username))
        reply = await self.receive(EVENT_CHANNEL)
        if isinstance(reply, AuthFail):
            raise ClientError(f"Authentication failed: {reply.reason}")
        if not isinstance(reply, AuthOk):
            raise ClientError(f"Unexpected reply to AUTH: {reply}")
        return reply

    # =========================================================================
    # Execution channels
    # =========================================================================

    async def execute(
        self,
        code: str | bytes,
        channel: int = PRIMARY_EXEC_CHANNEL,
        format: int = ExecFormat.SOURCE,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run code and collect its output until PRO (or CON)."""
        request_id = next(self._ids)
        await self.send_message(Exe(channel=channel, data=code, format=format, id=request_id))
        output: list[str] = []
        while True:
            reply = await self.receive(channel, timeout)
            if isinstance(reply, Res):
                data = reply.data
                output.append(data.decode("utf-8", "replace") if isinstance(data, bytes) else data)
            elif isinstance(reply, Pro):
                return ExecResult(
                    output="".join(output), ok=reply.status == 0, error=reply.error
                )
            elif isinstance(reply, Con):
                return ExecResult(output="".join(output), ok=True, incomplete=True)
            else:
                raise ClientError(f"Unexpected reply to EXE: {reply}")

    async def complete(self, text: str, channel: int = PRIMARY_EXEC_CHANNEL) -> list[str]:
        """Ask for tab-completion candidates."""
        await self.send_message(Exe(channel=channel, data=text + "\t", id=next(self._ids)))
        while True:
            reply = await self.receive(channel)
            if isinstance(reply, Com):
                return list(reply.candidates)
            if isinstance(reply, Pro):
                raise ClientError(f"Completion failed: {reply.error}")

    async def interrupt(self, channel: int = PRIMARY_EXEC_CHANNEL) -> None:
        await self.send_message(Int(channel=channel))

    async def reset(self, channel: int = PRIMARY_EXEC_CHANNEL, mode: int = ResetMode.SOFT) -> None:
        await self.send_message(Rst(channel=channel, mode=mode))

    # =========================================================================
    # File channel
    # =========================================================================

    async def put(
        self,
        source: bytes | Path,
        remote_path: str,
        blksize: int | None = None,
        mtime: int | None = None,
        retries: int = 1,
    ) -> int:
        """Upload a file.

        Args:
            source: File contents, or a local path to read.
            remote_path: Destination path on the server.
            blksize: Requested block size.
            mtime: Modification time to set on the server.
            retries: Retransmissions per block before giving up.

        Returns:
            Number of bytes sent.

        Raises:
            TransferError: If the server reports an ERROR.
        """
        data = source.read_bytes() if isinstance(source, Path) else source
        wrq = Wrq(path=remote_path, tsize=len(data), blksize=blksize, mtime=mtime)
        options = await self._expect_ack(wrq, 0, retries)
        size = options.blksize or blksize or 512
        timeout = (options.timeout or 5000) / 1000

        block = 0
        offset = 0
        while True:
            block += 1
            chunk = data[offset : offset + size]
            await self._expect_ack(Data(block=block, data=chunk), block, retries, timeout)
            offset += len(chunk)
            if len(chunk) < size or block == MAX_BLOCK_NUMBER:
                break
        logger.debug("put_complete: path=%s bytes=%d blocks=%d", remote_path, offset, block)
        return offset

    async def get(
        self, remote_path: str, blksize: int | None = None, retries: int = 1
    ) -> bytes:
        """Download a file.

        Args:
            remote_path: Source path on the server.
            blksize: Requested block size.
            retries: Times the last ACK is resent while waiting for a block.

        Raises:
            TransferError: If the server reports an ERROR.
            TimeoutError: If the server stays silent after all retries.
        """
        await self.send_message(Rrq(path=remote_path, blksize=blksize))
        options = await self._file_reply()
        if not isinstance(options, Ack) or options.block != 0:
            raise ClientError(f"Unexpected reply to RRQ: {options}")
        size = options.blksize or blksize or 512
        timeout = (options.timeout or 5000) / 1000

        chunks: list[bytes] = []
        last = Ack(block=0)
        await self.send_message(last)
        expected = 1
        attempts = 0
        while True:
            try:
                reply = await self._file_reply(timeout)
            except TimeoutError:
                if attempts >= retries:
                    raise
                attempts += 1
                await self.send_message(last)
                continue
            if not isinstance(reply, Data):
                raise ClientError(f"Unexpected message during download: {reply}")
            if reply.block != expected:
                continue
            chunks.append(reply.data)
            last = Ack(block=reply.block)
            attempts = 0
            await self.send_message(last)
            if len(reply.data) < size or reply.block == MAX_BLOCK_NUMBER:
                break
            expected += 1
        return b"".join(chunks)

    async def _file_reply(self, timeout: float | None = None) -> Message:
        reply = await self.receive(FILE_CHANNEL, timeout)
        if isinstance(reply, FileError):
            try:
                code = ErrorCode(reply.code)
            except ValueError:
                code = ErrorCode.UNDEFINED
            raise TransferError(code, reply.message or "")
        return reply

    async def _expect_ack(
        self,
        message: Message,
        block: int,
        retries: int,
        timeout: float | None = None,
    ) -> Ack:
        attempts = 0
        await self.send_message(message)
        while True:
            try:
                reply = await self._file_reply(timeout)
            except TimeoutError:
                if attempts >= retries:
                    raise
                attempts += 1
                await self.send_message(message)
                continue
            if isinstance(reply, Ack) and reply.block == block:
                return reply
            logger.debug("unexpected_file_reply: expected_ack=%d got=%s", block, reply)
