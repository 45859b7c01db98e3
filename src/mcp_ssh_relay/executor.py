"""Run a remote command and stream its output with a hard timeout."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

import asyncssh

from .errors import RemoteExecutionError
from .session import Session
from .types import ExecResult

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Run Command Timeout!"

_CLOSED = object()


class LineChannel:
    """Unbounded line queue with an explicit, one-time close.

    Iterating yields lines until the channel is closed. Lines are sent by
    one producer; closing belongs to whoever decides the command is over.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, line: str) -> None:
        if self._closed:
            raise RuntimeError(f"send on closed {self.name} channel")
        self._queue.put_nowait(line)

    def close(self) -> None:
        if self._closed:
            raise RuntimeError(f"{self.name} channel closed twice")
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> str | None:
        """Next line, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later reader.
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[str]:
        while True:
            line = await self.get()
            if line is None:
                return
            yield line


def exit_error(exit_status: int | None, exit_signal: Any = None) -> RemoteExecutionError | None:
    """Translate a remote exit status or signal into an error, None on success."""
    if exit_signal:
        name = exit_signal[0] if isinstance(exit_signal, tuple) else str(exit_signal)
        return RemoteExecutionError(
            f"Process exited with signal {name}", exit_status=exit_status, exit_signal=name
        )
    if exit_status is None:
        return RemoteExecutionError("Process exited without exit status or exit signal")
    if exit_status != 0:
        return RemoteExecutionError(
            f"Process exited with status {exit_status}", exit_status=exit_status
        )
    return None


def _strip_eol(line: str) -> str:
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


class CommandStream:
    """Live view of a running command.

    ``stdout`` and ``stderr`` are :class:`LineChannel` objects; ``done``
    resolves to True when the command finished and False when the timeout
    fired; ``error`` resolves to the remote execution error (None on success
    or timeout). Keep reading both channels until they close before relying
    on ``done`` and ``error``.

    The channels do not push back on the remote side. Output the consumer
    has not read yet is buffered in full, so read both channels together
    (as :meth:`collect` does) when the command may be chatty.
    """

    def __init__(self) -> None:
        loop = asyncio.get_running_loop()
        self.stdout = LineChannel("stdout")
        self.stderr = LineChannel("stderr")
        self.done: asyncio.Future[bool] = loop.create_future()
        self.error: asyncio.Future[RemoteExecutionError | None] = loop.create_future()
        self.task: asyncio.Task[None] | None = None

    async def collect(self) -> ExecResult:
        """Drain everything and return it as an :class:`ExecResult`."""

        async def drain(channel: LineChannel) -> str:
            return "".join([f"{line}\n" async for line in channel])

        stdout, stderr = await asyncio.gather(drain(self.stdout), drain(self.stderr))
        completed = await self.done
        error = await self.error

        exit_status: int | None = None
        exit_signal: str | None = None
        if error is not None:
            exit_status, exit_signal = error.exit_status, error.exit_signal
        elif completed:
            exit_status = 0

        return ExecResult(
            stdout=stdout,
            stderr=stderr,
            completed=completed,
            exit_status=exit_status,
            exit_signal=exit_signal,
            error=error,
        )


class StreamExecutor:
    """Run one command on a :class:`Session` and stream its output.

    Two reader tasks copy stdout and stderr line by line into their
    channels. A watcher task waits for both readers to finish, racing a
    timer. Whichever wins, the watcher is the only task that resolves
    ``done``/``error``, closes the channels and closes the session.
    """

    def __init__(self, session: Session, timeout: float | None = 60.0) -> None:
        self._session = session
        self._timeout = timeout if timeout and timeout > 0 else None

    async def start(self, command: str) -> CommandStream:
        process = await self._session.start(command)
        stream = CommandStream()
        stream.task = asyncio.create_task(self._watch(process, stream, command))
        return stream

    async def run(self, command: str) -> ExecResult:
        stream = await self.start(command)
        return await stream.collect()

    async def _pump(self, reader: Any, channel: LineChannel) -> None:
        try:
            async for line in reader:
                # asyncssh yields '' when EOF arrives during a readline.
                if not line:
                    continue
                channel.send(_strip_eol(line))
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"{channel.name} reader stopped: {e}")

    async def _watch(
        self, process: asyncssh.SSHClientProcess, stream: CommandStream, command: str
    ) -> None:
        readers = asyncio.gather(
            self._pump(process.stdout, stream.stdout),
            self._pump(process.stderr, stream.stderr),
        )
        error: RemoteExecutionError | None = None
        completed = False
        try:
            finished, _ = await asyncio.wait({readers}, timeout=self._timeout)
            if finished:
                completed = True
                try:
                    await process.wait_closed()
                    error = exit_error(process.exit_status, process.exit_signal)
                except (OSError, asyncssh.Error) as e:
                    error = RemoteExecutionError(str(e))
            else:
                logger.warning(
                    f"Command timed out after {self._timeout}s on "
                    f"{self._session.spec.address}: {command!r}"
                )
                stream.stderr.send(TIMEOUT_MESSAGE)
                # The remote process is abandoned; closing the connection
                # tears down its channel.
                await self._session.close()
                readers.cancel()
                await asyncio.wait({readers})
        finally:
            if not readers.done():
                readers.cancel()
                await asyncio.wait({readers})
            stream.stdout.close()
            stream.stderr.close()
            if not stream.error.done():
                stream.error.set_result(error)
            if not stream.done.done():
                stream.done.set_result(completed)
            await self._session.close()
