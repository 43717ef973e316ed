"""LocalStorage - the default Storage, rooted at a directory.

Uploads are written to a temporary sibling and moved over the target on
close, so a failed transfer never leaves a truncated file behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from webrepl.core.errors import ErrorCode, TransferError
from webrepl.server.protocols import ReadResult

logger = logging.getLogger(__name__)


@dataclass
class LocalWriteHandle:
    """Temporary file that replaces target on close."""

    target: Path
    temp_path: Path
    file: BinaryIO

    async def write(self, data: bytes) -> None:
        try:
            await asyncio.to_thread(self.file.write, data)
        except OSError as e:
            raise TransferError(_error_code(e), str(e)) from e

    async def close(self) -> None:
        try:
            self.file.close()
            os.replace(self.temp_path, self.target)
        except OSError as e:
            raise TransferError(_error_code(e), str(e)) from e

    async def abort(self) -> None:
        self.file.close()
        self.temp_path.unlink(missing_ok=True)


@dataclass
class LocalReadHandle:
    file: BinaryIO

    async def read(self, size: int) -> bytes:
        try:
            return await asyncio.to_thread(self.file.read, size)
        except OSError as e:
            raise TransferError(_error_code(e), str(e)) from e

    async def close(self) -> None:
        self.file.close()


def _error_code(error: OSError) -> ErrorCode:
    if isinstance(error, FileNotFoundError):
        return ErrorCode.FILE_NOT_FOUND
    if isinstance(error, PermissionError):
        return ErrorCode.ACCESS_VIOLATION
    if error.errno in (28, 122):  # ENOSPC, EDQUOT
        return ErrorCode.DISK_FULL
    return ErrorCode.UNDEFINED


class LocalStorage:
    """Serves files below root.

    Example:
        >>> storage = LocalStorage("/srv/device")
        >>> handle = await storage.open_write("lib/util.py", 512)
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, path: str) -> Path:
        """Map a client path to a filesystem path below root.

        Raises:
            TransferError: ACCESS_VIOLATION if the path escapes root.
        """
        if not path or "\x00" in path:
            raise TransferError(ErrorCode.ACCESS_VIOLATION, "Invalid path")
        resolved = (self.root / path.lstrip("/")).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise TransferError(ErrorCode.ACCESS_VIOLATION, f"Path outside root: {path}")
        return resolved

    async def open_write(self, path: str, expected_size: int) -> LocalWriteHandle:
        target = self.resolve(path)
        try:
            if target == self.root or target.is_dir():
                raise TransferError(ErrorCode.ACCESS_VIOLATION, f"Is a directory: {path}")
            if not target.parent.is_dir():
                raise TransferError(ErrorCode.FILE_NOT_FOUND, f"No such directory: {path}")
            free = shutil.disk_usage(target.parent).free
        except OSError as e:
            raise TransferError(_error_code(e), f"{path}: {e.strerror}") from e

        if expected_size > free:
            raise TransferError(
                ErrorCode.DISK_FULL, f"{expected_size} bytes requested, {free} available"
            )

        try:
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".part", dir=target.parent
            )
        except OSError as e:
            raise TransferError(_error_code(e), str(e)) from e

        logger.debug("open_write: path=%s temp=%s", target, temp_name)
        return LocalWriteHandle(
            target=target, temp_path=Path(temp_name), file=os.fdopen(fd, "wb")
        )

    async def open_read(self, path: str) -> ReadResult:
        target = self.resolve(path)
        try:
            st = target.stat()
        except OSError as e:
            raise TransferError(_error_code(e), f"{path}: {e.strerror}") from e
        if not stat.S_ISREG(st.st_mode):
            raise TransferError(ErrorCode.ACCESS_VIOLATION, f"Not a regular file: {path}")

        try:
            file = target.open("rb")
        except OSError as e:
            raise TransferError(_error_code(e), f"{path}: {e.strerror}") from e

        logger.debug("open_read: path=%s size=%d", target, st.st_size)
        return ReadResult(
            handle=LocalReadHandle(file),
            size=st.st_size,
            mtime=int(st.st_mtime),
            mode=st.st_mode,
        )

    async def set_mtime(self, path: str, mtime: int) -> None:
        target = self.resolve(path)
        try:
            os.utime(target, (mtime, mtime))
        except OSError as e:
            raise TransferError(_error_code(e), str(e)) from e
