"""High-level client: connect, run or stream a command, upload a file."""

from __future__ import annotations

import logging
import os

from .executor import CommandStream, StreamExecutor
from .scp import DEFAULT_MODE, ScpUploader, Source
from .session import Session, SessionFactory
from .types import ConnectionSpec, ExecResult, UploadResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0


class SSHClient:
    """Run commands and upload files on the host described by a spec.

    Every call opens its own session and closes it before returning (or,
    for :meth:`stream`, once the command finishes or times out).
    """

    def __init__(self, spec: ConnectionSpec, factory: SessionFactory | None = None) -> None:
        self.spec = spec
        self._factory = factory or SessionFactory()

    async def connect(self) -> Session:
        """Open an authenticated session; the caller must close it."""
        return await self._factory.connect(self.spec)

    async def stream(self, command: str, timeout: float | None = DEFAULT_COMMAND_TIMEOUT) -> CommandStream:
        """Start ``command`` and return its live output channels.

        Args:
            command: Shell command to run on the remote host.
            timeout: Seconds to wait for the command; 0 or None waits forever.

        Returns:
            The stream; read ``stdout`` and ``stderr`` until both close,
            then check ``done`` and ``error``.
        """
        session = await self.connect()
        return await StreamExecutor(session, timeout).start(command)

    async def run(self, command: str, timeout: float | None = DEFAULT_COMMAND_TIMEOUT) -> ExecResult:
        """Run ``command`` and collect its output.

        A non-zero exit is reported on ``ExecResult.error``; a timeout is
        reported as ``completed=False`` with a marker line on stderr.
        """
        stream = await self.stream(command, timeout)
        result = await stream.collect()
        logger.info(
            f"Ran command on {self.spec.address}: completed={result.completed} "
            f"exit_status={result.exit_status}"
        )
        return result

    async def write_file(
        self,
        source: Source,
        size: int,
        remote_path: str,
        mode: int = DEFAULT_MODE,
        timeout: float | None = None,
    ) -> UploadResult:
        """Upload ``size`` bytes read from ``source`` to ``remote_path``."""
        session = await self.connect()
        return await ScpUploader(session, timeout).upload(source, size, remote_path, mode)

    async def scp(
        self,
        source_file: str | os.PathLike[str],
        remote_path: str | None = None,
        mode: int = DEFAULT_MODE,
        timeout: float | None = None,
    ) -> UploadResult:
        """Copy a local file to the remote host.

        ``remote_path`` defaults to the file's base name in the remote
        user's home directory.
        """
        if remote_path is None:
            remote_path = os.path.basename(os.fspath(source_file))

        with open(source_file, "rb") as src:
            size = os.fstat(src.fileno()).st_size
            return await self.write_file(src, size, remote_path, mode, timeout)
