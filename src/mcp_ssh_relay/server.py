"""MCP SSH Relay server - run commands and upload files over SSH, via bastions."""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from .client import DEFAULT_COMMAND_TIMEOUT, SSHClient
from .errors import SSHRelayError
from .session import SessionFactory
from .types import ConnectionSpec

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)

TIMEOUT_ENV = "MCP_SSH_RELAY_TIMEOUT"


@dataclass
class AppContext:
    """Application context with shared resources."""

    session_factory: SessionFactory
    command_timeout: float


def get_command_timeout() -> float:
    """Default command timeout from the environment, in seconds."""
    value = os.environ.get(TIMEOUT_ENV)
    if not value:
        return DEFAULT_COMMAND_TIMEOUT
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {TIMEOUT_ENV}={value!r}")
        return DEFAULT_COMMAND_TIMEOUT


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle."""
    logger.info("MCP SSH Relay server started")
    try:
        yield AppContext(
            session_factory=SessionFactory(),
            command_timeout=get_command_timeout(),
        )
    finally:
        logger.info("MCP SSH Relay server stopped")


# Create the MCP server
mcp = FastMCP(
    "SSH Relay",
    lifespan=app_lifespan,
)


def build_spec(
    host: str,
    username: str,
    port: int = 22,
    password: str | None = None,
    private_key: str | None = None,
    key_path: str | None = None,
    passphrase: str | None = None,
    fingerprint: str | None = None,
    bastion_host: str | None = None,
    bastion_username: str | None = None,
    bastion_port: int = 22,
    bastion_password: str | None = None,
    bastion_key_path: str | None = None,
    http_proxy: str | None = None,
) -> ConnectionSpec:
    """Assemble a ConnectionSpec from flat tool arguments."""
    proxy = None
    if bastion_host:
        proxy = ConnectionSpec(
            user=bastion_username or username,
            host=bastion_host,
            port=bastion_port,
            password=bastion_password,
            key_path=bastion_key_path,
        )

    return ConnectionSpec(
        user=username,
        host=host,
        port=port,
        password=password,
        private_key=private_key,
        key_path=key_path,
        passphrase=passphrase,
        fingerprint=fingerprint,
        proxy=proxy,
        http_proxy=http_proxy,
    )


# =============================================================================
# Command Execution Tools
# =============================================================================


@mcp.tool()
async def ssh_run(
    host: str,
    username: str,
    command: str,
    ctx: Context,
    port: int = 22,
    password: str | None = None,
    private_key: str | None = None,
    key_path: str | None = None,
    passphrase: str | None = None,
    fingerprint: str | None = None,
    timeout: float | None = None,
    bastion_host: str | None = None,
    bastion_username: str | None = None,
    bastion_port: int = 22,
    bastion_password: str | None = None,
    bastion_key_path: str | None = None,
    http_proxy: str | None = None,
) -> dict:
    """Run a command on a remote SSH server, optionally through a bastion.

    Args:
        host: The hostname or IP address to run the command on.
        username: The remote username.
        command: The command to run.
        port: The SSH port (default 22).
        password: Password for authentication.
        private_key: Private key as a PEM/OpenSSH string.
        key_path: Path to a private key file on this machine.
        passphrase: Passphrase for an encrypted private key.
        fingerprint: Pinned SHA256 host key fingerprint; any key is accepted if unset.
        timeout: Command timeout in seconds (server default if unset).
        bastion_host: Jump host to tunnel through.
        bastion_username: Username on the jump host (defaults to username).
        bastion_port: SSH port of the jump host.
        bastion_password: Password for the jump host.
        bastion_key_path: Private key file for the jump host.
        http_proxy: HTTP CONNECT proxy URL used to reach the first hop.

    Returns:
        stdout, stderr, whether the command completed before the timeout,
        and its exit status.
    """
    app_ctx: AppContext = ctx.request_context.lifespan_context
    spec = build_spec(
        host, username, port, password, private_key, key_path, passphrase, fingerprint,
        bastion_host, bastion_username, bastion_port, bastion_password, bastion_key_path,
        http_proxy,
    )
    client = SSHClient(spec, app_ctx.session_factory)

    try:
        result = await client.run(
            command, timeout if timeout is not None else app_ctx.command_timeout
        )
        return {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "completed": result.completed,
            "exit_status": result.exit_status,
            "error": str(result.error) if result.error else None,
        }
    except SSHRelayError as e:
        return {"stdout": "", "stderr": str(e), "completed": False, "exit_status": None,
                "error": str(e)}


# =============================================================================
# SCP Tools
# =============================================================================


@mcp.tool()
async def ssh_write_file(
    host: str,
    username: str,
    content: str,
    remote_path: str,
    ctx: Context,
    port: int = 22,
    password: str | None = None,
    key_path: str | None = None,
    mode: str = "0644",
    bastion_host: str | None = None,
    bastion_username: str | None = None,
    bastion_key_path: str | None = None,
    http_proxy: str | None = None,
) -> dict:
    """Write text content to a file on a remote SSH server via SCP.

    Args:
        host: The hostname to upload to.
        username: The remote username.
        content: Text to write (UTF-8 encoded).
        remote_path: Destination path on the remote server.
        port: The SSH port (default 22).
        password: Password for authentication.
        key_path: Path to a private key file on this machine.
        mode: Octal file mode (default 0644).
        bastion_host: Jump host to tunnel through.
        bastion_username: Username on the jump host (defaults to username).
        bastion_key_path: Private key file for the jump host.
        http_proxy: HTTP CONNECT proxy URL used to reach the first hop.

    Returns:
        Upload result including status and bytes transferred.
    """
    app_ctx: AppContext = ctx.request_context.lifespan_context
    spec = build_spec(
        host, username, port, password=password, key_path=key_path,
        bastion_host=bastion_host, bastion_username=bastion_username,
        bastion_key_path=bastion_key_path, http_proxy=http_proxy,
    )
    client = SSHClient(spec, app_ctx.session_factory)
    data = content.encode()

    try:
        result = await client.write_file(data, len(data), remote_path, int(mode, 8))
        return {
            "status": "success",
            "remote_path": result.remote_path,
            "bytes_transferred": result.bytes_transferred,
        }
    except (SSHRelayError, ValueError) as e:
        return {"status": "error", "message": str(e)}


@mcp.tool()
async def scp_upload(
    host: str,
    username: str,
    local_path: str,
    ctx: Context,
    remote_path: str | None = None,
    port: int = 22,
    password: str | None = None,
    key_path: str | None = None,
    bastion_host: str | None = None,
    bastion_username: str | None = None,
    bastion_key_path: str | None = None,
    http_proxy: str | None = None,
) -> dict:
    """Upload a local file to a remote SSH server via SCP.

    Args:
        host: The hostname to upload to.
        username: The remote username.
        local_path: Path to the local file to upload.
        remote_path: Destination path (defaults to the file name in the home directory).
        port: The SSH port (default 22).
        password: Password for authentication.
        key_path: Path to a private key file on this machine.
        bastion_host: Jump host to tunnel through.
        bastion_username: Username on the jump host (defaults to username).
        bastion_key_path: Private key file for the jump host.
        http_proxy: HTTP CONNECT proxy URL used to reach the first hop.

    Returns:
        Upload result including status and bytes transferred.
    """
    app_ctx: AppContext = ctx.request_context.lifespan_context
    spec = build_spec(
        host, username, port, password=password, key_path=key_path,
        bastion_host=bastion_host, bastion_username=bastion_username,
        bastion_key_path=bastion_key_path, http_proxy=http_proxy,
    )
    client = SSHClient(spec, app_ctx.session_factory)

    try:
        result = await client.scp(local_path, remote_path)
        return {
            "status": "success",
            "remote_path": result.remote_path,
            "bytes_transferred": result.bytes_transferred,
        }
    except (SSHRelayError, OSError) as e:
        return {"status": "error", "message": str(e)}


def main():
    """Entry point for the MCP SSH Relay server."""
    mcp.run()


if __name__ == "__main__":
    main()
