"""Run commands and upload files over SSH, directly or through a bastion or HTTP proxy."""

from .client import SSHClient
from .errors import (
    AuthResolutionError,
    BastionError,
    CommandTimeoutError,
    DialError,
    ForwardError,
    HandshakeError,
    ProxyHandshakeError,
    RemoteExecutionError,
    SessionSetupError,
    SSHRelayError,
    TransferError,
)
from .executor import TIMEOUT_MESSAGE, CommandStream, StreamExecutor
from .scp import ScpUploader
from .session import Session, SessionFactory
from .tunnel import http_proxy_from_environment
from .types import AddressFamily, ConnectionSpec, ExecResult, UploadResult

__all__ = [
    "AddressFamily",
    "AuthResolutionError",
    "BastionError",
    "CommandStream",
    "CommandTimeoutError",
    "ConnectionSpec",
    "DialError",
    "ExecResult",
    "ForwardError",
    "HandshakeError",
    "ProxyHandshakeError",
    "RemoteExecutionError",
    "ScpUploader",
    "Session",
    "SessionFactory",
    "SessionSetupError",
    "SSHClient",
    "SSHRelayError",
    "StreamExecutor",
    "TIMEOUT_MESSAGE",
    "TransferError",
    "UploadResult",
    "http_proxy_from_environment",
]
