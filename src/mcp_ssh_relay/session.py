"""SSH handshake, host key policy and single-use sessions."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

import asyncssh
from asyncssh.encryption import get_default_encryption_algs, get_encryption_algs
from asyncssh.kex import get_default_kex_algs, get_kex_algs

from .auth import AuthMethods, AuthResolver
from .errors import BastionError, DialError, HandshakeError, SessionSetupError, SSHRelayError
from .tunnel import BastionTunnel, HttpConnectTunnel
from .types import ConnectionSpec

logger = logging.getLogger(__name__)

# Only added on explicit request, for old servers and network gear.
INSECURE_CIPHERS = ("aes128-cbc", "aes192-cbc", "aes256-cbc", "3des-cbc")
INSECURE_KEX = ("diffie-hellman-group-exchange-sha1", "diffie-hellman-group1-sha1")

PTY_TERM = "xterm"
PTY_WIDTH = 80
PTY_HEIGHT = 40
# RFC 4254 terminal mode opcodes
PTY_ECHO = 53
PTY_TTY_OP_ISPEED = 128
PTY_TTY_OP_OSPEED = 129
PTY_MODES = {PTY_ECHO: 0, PTY_TTY_OP_ISPEED: 14400, PTY_TTY_OP_OSPEED: 14400}


class PinnedHostKeyClient(asyncssh.SSHClient):
    """Accept the server only if its host key has the configured fingerprint."""

    def __init__(self, fingerprint: str) -> None:
        super().__init__()
        self._fingerprint = fingerprint

    def validate_host_public_key(
        self, host: str, addr: tuple[str, int], port: int, key: asyncssh.SSHKey
    ) -> bool:
        presented = key.get_fingerprint("sha256")
        if fingerprint_matches(self._fingerprint, presented):
            return True
        logger.warning(f"Host key mismatch for {host}:{port}: got {presented}")
        return False


def fingerprint_matches(expected: str, presented: str) -> bool:
    """Exact comparison, tolerating a missing ``SHA256:`` prefix on ``expected``."""
    if ":" not in expected:
        presented = presented.partition(":")[2]
    return expected == presented


def _alg_names(algs: list[bytes]) -> list[str]:
    return [alg.decode("ascii") for alg in algs]


def _unique(names: list[str]) -> list[str]:
    return list(dict.fromkeys(names))


def algorithm_options(spec: ConnectionSpec) -> dict[str, list[str]]:
    """Cipher and key exchange overrides for ``asyncssh.connect``."""
    ciphers = list(spec.ciphers or [])
    kex = list(spec.key_exchanges or [])

    if spec.use_insecure_cipher:
        supported = _alg_names(get_encryption_algs())
        ciphers = (ciphers or _alg_names(get_default_encryption_algs())) + [
            c for c in INSECURE_CIPHERS if c in supported
        ]
        supported = _alg_names(get_kex_algs())
        kex = (kex or _alg_names(get_default_kex_algs())) + [
            k for k in INSECURE_KEX if k in supported
        ]

    options: dict[str, list[str]] = {}
    if ciphers:
        options["encryption_algs"] = _unique(ciphers)
    if kex:
        options["kex_algs"] = _unique(kex)
    return options


def host_key_options(spec: ConnectionSpec) -> dict[str, Any]:
    """Host key policy: accept anything unless a fingerprint is pinned."""
    if not spec.fingerprint:
        return {"known_hosts": None}
    # Nothing is trusted up front, so every key goes through the client.
    return {
        "known_hosts": ([], [], []),
        "client_factory": partial(PinnedHostKeyClient, spec.fingerprint),
    }


class Session:
    """An authenticated connection used for exactly one command or transfer.

    Owns the SSH connection, the agent client used to authenticate it and,
    for a bastion chain, the session of the hop below. Closing is idempotent
    and tears the chain down from the target outwards.
    """

    def __init__(
        self,
        spec: ConnectionSpec,
        connection: asyncssh.SSHClientConnection,
        auth: AuthMethods | None = None,
        parent: Session | None = None,
    ) -> None:
        self.spec = spec
        self.connection = connection
        self.parent = parent
        self._auth = auth
        self._started = False
        self._closed = False
        self._lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(
        self, command: str, encoding: str | None = "utf-8", errors: str = "replace"
    ) -> asyncssh.SSHClientProcess:
        """Start ``command`` on the remote side, requesting a pty if configured."""
        if self._started:
            raise SessionSetupError("session already used for a command")
        if self._closed:
            raise SessionSetupError("session is closed")
        self._started = True

        kwargs: dict[str, Any] = {"encoding": encoding}
        if encoding is not None:
            kwargs["errors"] = errors
        if self.spec.request_pty:
            kwargs.update(
                term_type=PTY_TERM,
                term_size=(PTY_WIDTH, PTY_HEIGHT),
                term_modes=PTY_MODES,
            )

        try:
            return await self.connection.create_process(command, **kwargs)
        except (OSError, asyncssh.Error) as e:
            await self.close()
            raise SessionSetupError(
                f"failed to start command on {self.spec.address}: {e}"
            ) from e

    async def close(self) -> None:
        async with self._lock:
            if self._closed:
                return
            self._closed = True

        self.connection.close()
        await self.connection.wait_closed()
        if self._auth is not None:
            await self._auth.close()
        logger.info(f"Closed connection to {self.spec.address}")

        if self.parent is not None:
            await self.parent.close()

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class SessionFactory:
    """Perform the SSH handshake for a :class:`ConnectionSpec`.

    A spec with a ``proxy`` is reached by first connecting to the bastion
    (recursively, with its own credentials) and then running the target
    handshake over a channel forwarded through it.
    """

    async def connect(self, spec: ConnectionSpec, hop: str = "target") -> Session:
        parent: Session | None = None
        tunnel: Any = None

        if spec.proxy is not None:
            try:
                parent = await self.connect(self._bastion_spec(spec), hop="bastion")
            except SSHRelayError as e:
                raise BastionError(f"bastion {spec.proxy.address}: {e}") from e
            tunnel = BastionTunnel(parent.connection, name=f"bastion {spec.proxy.address}")
        elif spec.http_proxy:
            tunnel = HttpConnectTunnel(spec.http_proxy, spec.family.socket_family)

        try:
            connection, auth = await self._handshake(spec, hop, tunnel)
        except BaseException:
            if parent is not None:
                await parent.close()
            raise

        logger.info(f"Connected to {spec.address} as {spec.user}")
        return Session(spec, connection, auth=auth, parent=parent)

    @staticmethod
    def _bastion_spec(spec: ConnectionSpec) -> ConnectionSpec:
        proxy = spec.proxy
        assert proxy is not None
        # The HTTP proxy applies to the first network hop.
        if spec.http_proxy and not proxy.http_proxy:
            return proxy.model_copy(update={"http_proxy": spec.http_proxy})
        return proxy

    async def _handshake(
        self, spec: ConnectionSpec, hop: str, tunnel: Any
    ) -> tuple[asyncssh.SSHClientConnection, AuthMethods]:
        auth = await AuthResolver(spec).resolve()
        if not auth:
            logger.warning(f"No credentials available for {spec.user}@{spec.address}")

        options: dict[str, Any] = {
            "host": spec.host,
            "port": spec.port,
            "username": spec.user,
            "family": spec.family.socket_family,
            "connect_timeout": spec.timeout or None,
            **auth.connect_options(),
            **host_key_options(spec),
            **algorithm_options(spec),
        }
        if tunnel is not None:
            options["tunnel"] = tunnel

        try:
            connection = await asyncssh.connect(**options)
        except SSHRelayError:
            await auth.close()
            raise
        except asyncio.TimeoutError as e:
            await auth.close()
            raise HandshakeError(hop, spec.address, f"timed out after {spec.timeout}s") from e
        except (asyncssh.Error, ValueError) as e:
            await auth.close()
            raise HandshakeError(hop, spec.address, e) from e
        except OSError as e:
            await auth.close()
            raise DialError(hop, spec.address, e) from e
        except BaseException:
            await auth.close()
            raise

        return connection, auth
