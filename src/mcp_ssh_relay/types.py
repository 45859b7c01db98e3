"""Type definitions for MCP SSH Relay."""

from __future__ import annotations

import socket
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .errors import RemoteExecutionError


class AddressFamily(str, Enum):
    ANY = "any"
    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def socket_family(self) -> int:
        """The matching ``socket`` address family constant."""
        if self is AddressFamily.IPV4:
            return socket.AF_INET
        if self is AddressFamily.IPV6:
            return socket.AF_INET6
        return socket.AF_UNSPEC


class ConnectionSpec(BaseModel):
    """How to reach and authenticate against one SSH host.

    A nested ``proxy`` describes a bastion hop that is dialed first. The
    ``http_proxy`` URL, when set, is used to reach the first network hop
    (the bastion if there is one, otherwise the target).
    """

    user: str
    host: str
    port: int = Field(default=22, ge=1, le=65535)
    family: AddressFamily = AddressFamily.ANY
    timeout: float = Field(default=60.0, ge=0)

    password: str | None = None
    private_key: str | None = None
    key_path: str | None = None
    passphrase: str | None = None

    ciphers: list[str] | None = None
    key_exchanges: list[str] | None = None
    use_insecure_cipher: bool = False
    fingerprint: str | None = None
    request_pty: bool = False

    proxy: ConnectionSpec | None = None
    http_proxy: str | None = None

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class ExecResult(BaseModel):
    """Result of running a command to completion (or timeout)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    stdout: str = ""
    stderr: str = ""
    completed: bool = True
    exit_status: int | None = None
    exit_signal: str | None = None
    error: RemoteExecutionError | None = None

    @property
    def timed_out(self) -> bool:
        return not self.completed

    def check(self) -> ExecResult:
        """Raise the remote execution error, if any, otherwise return self."""
        if self.error is not None:
            raise self.error
        return self


class UploadResult(BaseModel):
    """Result of an SCP upload."""

    remote_path: str
    bytes_transferred: int
    mode: str
