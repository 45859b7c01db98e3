"""Exception hierarchy for MCP SSH Relay.

Setup failures are raised to the caller. A command that ran and failed is
reported on its result as a ``RemoteExecutionError``; a command that ran out
of time is reported with ``completed=False`` rather than an exception.
"""


class SSHRelayError(Exception):
    """Base class for all errors raised by this package."""


class DialError(SSHRelayError):
    """Opening the network connection for a hop failed."""

    def __init__(self, hop: str, address: str, reason: object) -> None:
        self.hop = hop
        self.address = address
        super().__init__(f"{hop}: failed to dial {address}: {reason}")


class ProxyHandshakeError(SSHRelayError):
    """The HTTP CONNECT proxy refused the tunnel or answered garbage."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class AuthResolutionError(SSHRelayError):
    """No usable credential could be produced from a source."""


class HandshakeError(SSHRelayError):
    """SSH handshake failed: rejected auth, host key mismatch, bad algorithms."""

    def __init__(self, hop: str, address: str, reason: object) -> None:
        self.hop = hop
        self.address = address
        super().__init__(f"{hop}: ssh handshake with {address} failed: {reason}")


class BastionError(SSHRelayError):
    """The bastion hop itself could not be established."""


class ForwardError(SSHRelayError):
    """The bastion accepted us but could not open a channel to the target."""

    def __init__(self, address: str, reason: object) -> None:
        self.address = address
        super().__init__(f"bastion: forwarding to {address} failed: {reason}")


class SessionSetupError(SSHRelayError):
    """Opening the session, its pipes or its pty failed."""


class CommandTimeoutError(SSHRelayError, TimeoutError):
    """An operation did not finish within its configured timeout."""


class RemoteExecutionError(SSHRelayError):
    """The remote process exited non-zero, died on a signal or vanished."""

    def __init__(
        self,
        message: str,
        exit_status: int | None = None,
        exit_signal: str | None = None,
    ) -> None:
        self.exit_status = exit_status
        self.exit_signal = exit_signal
        super().__init__(message)


class TransferError(SSHRelayError):
    """Reading the local source or writing it to the remote side failed."""
