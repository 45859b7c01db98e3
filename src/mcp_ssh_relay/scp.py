"""Upload a byte stream to a remote file with the scp sink protocol.

The remote side runs ``scp -tr <path>`` and reads, from its stdin::

    C<mode> <size> <name>\\n
    <size raw bytes>
    \\x00

Remote replies (``\\x00`` acks, ``\\x01``/``\\x02`` + message on failure) come
back on stdout; they are not needed to drive a single-file upload, but the
failure text is kept for the error message.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import shlex
from typing import IO, Union

import asyncssh

from .errors import CommandTimeoutError, RemoteExecutionError, TransferError
from .executor import exit_error
from .session import Session
from .types import UploadResult

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024
DEFAULT_MODE = 0o644

Source = Union[bytes, bytearray, memoryview, IO[bytes]]


def control_line(mode: int, size: int, name: str) -> bytes:
    return f"C{mode:04o} {size} {name}\n".encode()


def remote_command(remote_path: str) -> str:
    return f"scp -tr {shlex.quote(remote_path)}"


def target_name(remote_path: str) -> str:
    """Name sent in the control line; scp uses it when the path is a directory."""
    name = posixpath.basename(remote_path.rstrip("/"))
    return name or "."


def _remote_message(output: bytes | str | None) -> str:
    if not output:
        return ""
    if isinstance(output, bytes):
        output = output.decode("utf-8", "replace")
    return output.lstrip("\x00\x01\x02").strip()


async def _read_chunk(source: IO[bytes], size: int) -> bytes:
    return await asyncio.to_thread(source.read, size)


class ScpUploader:
    """Send one file over a :class:`Session` using ``scp -t``."""

    def __init__(self, session: Session, timeout: float | None = None) -> None:
        self._session = session
        self._timeout = timeout if timeout and timeout > 0 else None

    async def upload(
        self,
        source: Source,
        size: int,
        remote_path: str,
        mode: int = DEFAULT_MODE,
    ) -> UploadResult:
        """Upload ``size`` bytes from ``source`` to ``remote_path``.

        ``source`` is either a bytes-like object or a binary file object.
        The session is closed when this returns.

        Raises:
            TransferError: The source ran short or writing to the remote failed.
            RemoteExecutionError: The remote scp exited with an error.
            CommandTimeoutError: The transfer exceeded the timeout.
        """
        try:
            if size < 0:
                raise TransferError(f"invalid size {size}")
            try:
                return await asyncio.wait_for(
                    self._upload(source, size, remote_path, mode), self._timeout
                )
            except asyncio.TimeoutError as e:
                raise CommandTimeoutError(
                    f"upload to {remote_path} timed out after {self._timeout}s"
                ) from e
        finally:
            await self._session.close()

    async def _upload(self, source: Source, size: int, remote_path: str, mode: int) -> UploadResult:
        process = await self._session.start(remote_command(remote_path), encoding=None)
        writer = asyncio.create_task(
            self._send(process.stdin, source, size, target_name(remote_path), mode)
        )

        try:
            remote_error = await self._wait_remote(process)
            # Both results are collected; the local one wins.
            await writer
        finally:
            if not writer.done():
                writer.cancel()

        if remote_error is not None:
            raise remote_error

        logger.info(f"Uploaded {size} bytes to {self._session.spec.address}:{remote_path}")
        return UploadResult(remote_path=remote_path, bytes_transferred=size, mode=f"{mode:04o}")

    @staticmethod
    async def _wait_remote(process: asyncssh.SSHClientProcess) -> RemoteExecutionError | None:
        try:
            replies = await process.stdout.read()
            await process.wait_closed()
        except (OSError, asyncssh.Error) as e:
            return RemoteExecutionError(str(e))

        error = exit_error(process.exit_status, process.exit_signal)
        message = _remote_message(replies)
        if error is None or not message:
            return error
        return RemoteExecutionError(
            f"{error}: {message}", exit_status=error.exit_status, exit_signal=error.exit_signal
        )

    async def _send(
        self,
        stdin: asyncssh.SSHWriter,
        source: Source,
        size: int,
        name: str,
        mode: int,
    ) -> None:
        try:
            stdin.write(control_line(mode, size, name))
            await stdin.drain()
            if size > 0:
                await self._copy(stdin, source, size)
            stdin.write(b"\x00")
            await stdin.drain()
        except (OSError, asyncssh.Error) as e:
            raise TransferError(f"failed writing to remote scp: {e}") from e
        finally:
            try:
                stdin.write_eof()
            except (OSError, asyncssh.Error):
                pass

    async def _copy(self, stdin: asyncssh.SSHWriter, source: Source, size: int) -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            data = bytes(source[:size])
            if len(data) < size:
                raise TransferError(f"source has {len(data)} bytes, expected {size}")
            for offset in range(0, size, CHUNK_SIZE):
                stdin.write(data[offset:offset + CHUNK_SIZE])
                await stdin.drain()
            return

        remaining = size
        while remaining > 0:
            try:
                chunk = await _read_chunk(source, min(CHUNK_SIZE, remaining))
            except OSError as e:
                raise TransferError(f"failed reading source: {e}") from e
            if not chunk:
                raise TransferError(f"source ended {remaining} bytes short of {size}")
            stdin.write(chunk)
            await stdin.drain()
            remaining -= len(chunk)
