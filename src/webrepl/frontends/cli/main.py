"""CLI entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import NoReturn, TypeVar

import aiohttp
import rich_click as click
from rich.console import Console

from webrepl.__version__ import __version__
from webrepl.core.config import ServerConfig
from webrepl.core.errors import TransferError
from webrepl.core.logging_config import configure_logging
from webrepl.server.engine import build_engine
from webrepl.transport.protocol import ServerTransport
from webrepl.transport.websocket import (
    ClientError,
    ExecResult,
    WebSocketClient,
    WebSocketServer,
)

T = TypeVar("T")

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100

error_console = Console(stderr=True)

# Failures a client command reports without a traceback.
_CLIENT_ERRORS = (
    ClientError,
    TransferError,
    ConnectionError,
    TimeoutError,
    aiohttp.ClientError,
)


def _fail(message: str) -> NoReturn:
    error_console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


def _run_client(coro_fn: Callable[[], Awaitable[T]]) -> T:
    try:
        return asyncio.run(coro_fn())
    except _CLIENT_ERRORS as e:
        _fail(str(e) or type(e).__name__)


@asynccontextmanager
async def _authenticated(
    url: str, password: str, username: str | None
) -> AsyncIterator[WebSocketClient]:
    async with WebSocketClient(url) as client:
        await client.authenticate(password, username)
        yield client


password_option = click.option(
    "--password",
    "-p",
    envvar="WEBREPL_PASSWORD",
    prompt=True,
    hide_input=True,
    help="Server password (or WEBREPL_PASSWORD)",
)
username_option = click.option(
    "--username", "-u", envvar="WEBREPL_USERNAME", default=None, help="Optional username"
)


# =============================================================================
# Root CLI
# =============================================================================


@click.group()
@click.version_option(__version__, package_name="webrepl")
def cli() -> None:
    """WebREPL - remote Python REPL and file transfer over one WebSocket.

    **Server:**

        webrepl serve    Serve a directory and a Python REPL

    **Client:**

        webrepl exec     Run code on a server

        webrepl put      Upload a file

        webrepl get      Download a file
    """


@cli.command()
@click.option("--host", default=None, help="Interface to bind [default: 127.0.0.1]")
@click.option("--port", type=int, default=None, help="TCP port [default: 8266]")
@click.option("--path", "url_path", default=None, help="WebSocket path [default: /webrepl]")
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Directory exposed to file transfers [default: .]",
)
@click.option("--password", "-p", default=None, help="Password clients must send")
@click.option("--username", "-u", default=None, help="Username clients must send")
@click.option("--max-block-size", type=int, default=None, help="Largest block size granted")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
@click.option(
    "--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format"
)
@click.option(
    "--forward-logs",
    default="WARNING",
    show_default=True,
    help="Lowest level forwarded to clients as LOG, or 'off'",
)
def serve(
    host: str | None,
    port: int | None,
    url_path: str | None,
    root: str | None,
    password: str | None,
    username: str | None,
    max_block_size: int | None,
    log_level: str | None,
    log_format: str | None,
    forward_logs: str,
) -> None:
    """Start a WebREPL server.

    Options fall back to WEBREPL_* environment variables.

    **Examples:**

        webrepl serve --password secret

        webrepl serve --host 0.0.0.0 --root ./device --log-level DEBUG
    """
    configure_logging(level=log_level, format=log_format)

    try:
        config = ServerConfig.from_env(
            host=host,
            port=port,
            path=url_path,
            root=root,
            password=password,
            username=username,
            max_block_size=max_block_size,
        )
        engine = build_engine(config)
    except ValueError as e:
        _fail(str(e))

    forward_level = None if forward_logs.lower() == "off" else forward_logs.upper()
    server: ServerTransport = WebSocketServer(
        engine, forward_log_level=_level_number(forward_level)
    )

    root_dir = Path(config.root).resolve()
    click.echo(f"Serving {root_dir} on ws://{config.host}:{config.port}{config.path}")

    async def run() -> None:
        try:
            await server.serve()
        finally:
            await server.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("Stopped")


def _level_number(name: str | None) -> int | None:
    if name is None:
        return None
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        raise click.BadParameter(f"Unknown log level: {name}", param_hint="--forward-logs")
    return level


@cli.command("exec")
@click.argument("url")
@click.argument("code")
@password_option
@username_option
@click.option("--channel", "-c", type=click.IntRange(1, 22), default=1, help="Execution channel")
@click.option("--timeout", "-t", type=float, default=30.0, help="Seconds to wait for output")
def exec_command(
    url: str,
    code: str,
    password: str,
    username: str | None,
    channel: int,
    timeout: float,
) -> None:
    """Run CODE on the server at URL and print its output.

    Exits with status 1 if the code raised.

    **Examples:**

        webrepl exec ws://192.168.4.1:8266/webrepl "print(1 + 1)"
    """
    if not code.endswith("\n"):
        code += "\n"

    async def run():
        async with _authenticated(url, password, username) as client:
            result = await client.execute(code, channel=channel, timeout=timeout)
            if result.incomplete:
                # Terminate a compound statement with a blank line.
                more = await client.execute("\n", channel=channel, timeout=timeout)
                result = ExecResult(
                    output=result.output + more.output,
                    ok=more.ok,
                    error=more.error,
                    incomplete=more.incomplete,
                )
            return result

    result = _run_client(run)
    if result.output:
        click.echo(result.output, nl=False)
    if result.incomplete:
        _fail("Incomplete input")
    if not result.ok:
        error_console.print(result.error or "Error", markup=False, highlight=False)
        sys.exit(1)


@cli.command()
@click.argument("url")
@click.argument("local", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("remote")
@password_option
@username_option
@click.option("--blksize", "-b", type=int, default=None, help="Requested block size")
def put(
    url: str,
    local: Path,
    remote: str,
    password: str,
    username: str | None,
    blksize: int | None,
) -> None:
    """Upload LOCAL to REMOTE on the server at URL.

    The file's modification time is preserved.

    **Examples:**

        webrepl put ws://192.168.4.1:8266/webrepl main.py main.py
    """
    mtime = int(os.stat(local).st_mtime)

    async def run():
        async with _authenticated(url, password, username) as client:
            return await client.put(local, remote, blksize=blksize, mtime=mtime)

    sent = _run_client(run)
    click.echo(f"Sent {sent} bytes to {remote}")


@cli.command()
@click.argument("url")
@click.argument("remote")
@click.argument("local", type=click.Path(dir_okay=False, path_type=Path))
@password_option
@username_option
@click.option("--blksize", "-b", type=int, default=None, help="Requested block size")
def get(
    url: str,
    remote: str,
    local: Path,
    password: str,
    username: str | None,
    blksize: int | None,
) -> None:
    """Download REMOTE from the server at URL into LOCAL.

    **Examples:**

        webrepl get ws://192.168.4.1:8266/webrepl boot.py boot.py
    """

    async def run():
        async with _authenticated(url, password, username) as client:
            return await client.get(remote, blksize=blksize)

    data = _run_client(run)
    local.write_bytes(data)
    click.echo(f"Received {len(data)} bytes into {local}")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
