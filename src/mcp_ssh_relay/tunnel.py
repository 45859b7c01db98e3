"""Tunnels the SSH handshake can be layered on.

Both tunnel kinds expose the same ``create_connection(protocol_factory, host,
port)`` coroutine that asyncssh expects from its ``tunnel`` argument, so the
session code treats "through an HTTP proxy" and "through a bastion" alike.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import socket
import urllib.request
from typing import Any, Callable
from urllib.parse import unquote, urlsplit

import asyncssh

from .errors import DialError, ForwardError, ProxyHandshakeError

logger = logging.getLogger(__name__)

MAX_RESPONSE_HEAD = 64 * 1024
MAX_DRAIN_BYTES = 1024 * 1024
DEFAULT_PROXY_PORTS = {"http": 80, "https": 443}


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_proxy_url(url: str) -> tuple[str, int, str | None, str | None]:
    """Split a proxy URL into host, port, username and password.

    A bare ``host:port`` is accepted and treated as ``http://host:port``.
    """
    if "://" not in url:
        url = f"http://{url}"

    parts = urlsplit(url)
    if parts.scheme not in DEFAULT_PROXY_PORTS:
        raise ProxyHandshakeError(f"unsupported proxy scheme: {parts.scheme!r}")
    if not parts.hostname:
        raise ProxyHandshakeError(f"proxy URL has no host: {url!r}")

    try:
        port = parts.port or DEFAULT_PROXY_PORTS[parts.scheme]
    except ValueError as e:
        raise ProxyHandshakeError(f"invalid proxy port in {url!r}") from e

    username = unquote(parts.username) if parts.username is not None else None
    password = unquote(parts.password) if parts.password is not None else None
    return parts.hostname, port, username, password


def http_proxy_from_environment(host: str) -> str | None:
    """Proxy URL the environment configures for reaching ``host``, if any.

    Looks at ``HTTPS_PROXY``/``HTTP_PROXY`` (either case) and honours
    ``NO_PROXY``.
    """
    proxies = urllib.request.getproxies()
    url = proxies.get("https") or proxies.get("http")
    if not url:
        return None
    if urllib.request.proxy_bypass(host):
        return None
    return url


def build_connect_request(
    host: str, port: int, username: str | None = None, password: str | None = None
) -> bytes:
    target = _join_host_port(host, port)
    lines = [
        f"CONNECT {target} HTTP/1.1",
        f"Host: {target}",
        "Proxy-Connection: close",
    ]
    if username is not None:
        token = base64.b64encode(f"{username}:{password or ''}".encode()).decode("ascii")
        lines.append(f"Authorization: Basic {token}")
        lines.append(f"Proxy-Authorization: Basic {token}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")


def parse_response_head(head: bytes) -> tuple[int, str, dict[str, str]]:
    """Parse an HTTP response status line and headers."""
    status_line, _, rest = head.decode("latin-1").partition("\r\n")
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/"):
        raise ProxyHandshakeError(f"malformed proxy status line: {status_line!r}")
    try:
        status = int(parts[1])
    except ValueError as e:
        raise ProxyHandshakeError(f"malformed proxy status line: {status_line!r}") from e
    reason = parts[2] if len(parts) > 2 else ""

    headers: dict[str, str] = {}
    for line in rest.split("\r\n"):
        if not line:
            continue
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return status, reason, headers


async def _read_response_head(loop: asyncio.AbstractEventLoop, sock: socket.socket) -> bytes:
    # One byte at a time: whatever follows the blank line already belongs to
    # the tunnel (the SSH server speaks first) and must stay in the socket.
    head = bytearray()
    while not head.endswith(b"\r\n\r\n"):
        chunk = await loop.sock_recv(sock, 1)
        if not chunk:
            raise ProxyHandshakeError("proxy closed the connection during CONNECT")
        head += chunk
        if len(head) > MAX_RESPONSE_HEAD:
            raise ProxyHandshakeError("proxy response header too large")
    return bytes(head)


async def _drain_body(
    loop: asyncio.AbstractEventLoop, sock: socket.socket, headers: dict[str, str]
) -> None:
    try:
        remaining = min(int(headers.get("content-length", "0")), MAX_DRAIN_BYTES)
    except ValueError:
        return
    while remaining > 0:
        chunk = await loop.sock_recv(sock, min(remaining, 65536))
        if not chunk:
            return
        remaining -= len(chunk)


async def _dial(
    loop: asyncio.AbstractEventLoop, host: str, port: int, family: int
) -> socket.socket:
    infos = await loop.getaddrinfo(host, port, family=family, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"no addresses for {host}")

    last_error: OSError | None = None
    for af, socktype, proto, _, sockaddr in infos:
        sock = socket.socket(af, socktype, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, sockaddr)
            return sock
        except OSError as e:
            sock.close()
            last_error = e
    assert last_error is not None
    raise last_error


async def open_connect_tunnel(
    proxy_url: str,
    host: str,
    port: int,
    family: int = socket.AF_UNSPEC,
) -> socket.socket:
    """Open a socket to ``host:port`` through an HTTP CONNECT proxy.

    Returns the connected socket once the proxy answers 200. Any other
    status raises :class:`ProxyHandshakeError` carrying the status code; the
    socket is closed before raising and nothing beyond the CONNECT request
    has been written to it.
    """
    loop = asyncio.get_running_loop()
    proxy_host, proxy_port, username, password = parse_proxy_url(proxy_url)
    proxy_address = _join_host_port(proxy_host, proxy_port)
    target = _join_host_port(host, port)

    try:
        sock = await _dial(loop, proxy_host, proxy_port, family)
    except OSError as e:
        raise DialError("http proxy", proxy_address, e) from e

    try:
        await loop.sock_sendall(sock, build_connect_request(host, port, username, password))
        head = await _read_response_head(loop, sock)
        status, reason, headers = parse_response_head(head)
        if status != 200:
            await _drain_body(loop, sock, headers)
            raise ProxyHandshakeError(
                f"proxy {proxy_address} refused CONNECT {target}: "
                f"StatusCode: {status} {reason}".rstrip(),
                status=status,
            )
    except OSError as e:
        sock.close()
        raise ProxyHandshakeError(f"CONNECT via {proxy_address} failed: {e}") from e
    except BaseException:
        sock.close()
        raise

    logger.debug(f"CONNECT tunnel to {target} established via {proxy_address}")
    return sock


class HttpConnectTunnel:
    """Reach the next hop through an HTTP CONNECT proxy."""

    def __init__(self, proxy_url: str, family: int = socket.AF_UNSPEC) -> None:
        self.proxy_url = proxy_url
        self.family = family

    def __str__(self) -> str:
        host, port, _, _ = parse_proxy_url(self.proxy_url)
        return f"http proxy {_join_host_port(host, port)}"

    async def create_connection(
        self, protocol_factory: Callable[[], Any], remote_host: str, remote_port: int
    ) -> tuple[Any, Any]:
        sock = await open_connect_tunnel(self.proxy_url, remote_host, remote_port, self.family)
        loop = asyncio.get_running_loop()
        try:
            return await loop.create_connection(protocol_factory, sock=sock)
        except BaseException:
            sock.close()
            raise


class BastionTunnel:
    """Reach the next hop through a forwarded channel of an SSH connection."""

    def __init__(self, connection: asyncssh.SSHClientConnection, name: str = "bastion") -> None:
        self.connection = connection
        self.name = name

    def __str__(self) -> str:
        return self.name

    async def create_connection(
        self, protocol_factory: Callable[[], Any], remote_host: str, remote_port: int
    ) -> tuple[Any, Any]:
        address = _join_host_port(remote_host, remote_port)
        try:
            return await self.connection.create_connection(
                protocol_factory, remote_host, remote_port
            )
        except asyncssh.ChannelOpenError as e:
            raise ForwardError(address, e.reason) from e
        except (OSError, asyncssh.Error) as e:
            raise ForwardError(address, e) from e
