"""Resolve the ordered list of SSH authentication methods for a connection."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

import asyncssh

from .errors import AuthResolutionError
from .types import ConnectionSpec

logger = logging.getLogger(__name__)

AGENT_SOCKET_ENV = "SSH_AUTH_SOCK"


@dataclass
class AuthMethod:
    """One authentication method, tagged with the source that produced it."""

    kind: str  # "password" or "publickey"
    source: str
    password: str | None = None
    keys: list[Any] = field(default_factory=list)


class AuthProvider(Protocol):
    async def produce(self) -> AuthMethod | None: ...


class PasswordProvider:
    def __init__(self, password: str | None) -> None:
        self._password = password

    async def produce(self) -> AuthMethod | None:
        if not self._password:
            return None
        return AuthMethod(kind="password", source="password", password=self._password)


def _read_key_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _decode_key(data: bytes | str, passphrase: str | None) -> asyncssh.SSHKey:
    """Decode private key material, encrypted or not."""
    if passphrase:
        return asyncssh.import_private_key(data, passphrase)
    return asyncssh.import_private_key(data)


class KeyFileProvider:
    """Signer loaded from a private key file on the local machine."""

    def __init__(self, key_path: str | None, passphrase: str | None = None) -> None:
        self._key_path = key_path
        self._passphrase = passphrase

    async def produce(self) -> AuthMethod | None:
        if not self._key_path:
            return None

        path = os.path.expanduser(self._key_path)
        try:
            data = await asyncio.to_thread(_read_key_file, path)
            key = _decode_key(data, self._passphrase)
        except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            raise AuthResolutionError(f"key file {path}: {e}") from e

        return AuthMethod(kind="publickey", source=f"key file {path}", keys=[key])


class InlineKeyProvider:
    """Signer decoded from private key text held in memory."""

    def __init__(self, private_key: str | None, passphrase: str | None = None) -> None:
        self._private_key = private_key
        self._passphrase = passphrase

    async def produce(self) -> AuthMethod | None:
        if not self._private_key:
            return None

        try:
            key = _decode_key(self._private_key, self._passphrase)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            raise AuthResolutionError(f"inline private key: {e}") from e

        return AuthMethod(kind="publickey", source="inline key", keys=[key])


class AgentProvider:
    """Signers offered by a running ssh-agent.

    The agent connection has to stay open while the handshake signs with
    these keys, so the provider keeps it and hands it to the caller to close.
    """

    def __init__(self, agent_path: str | None = None) -> None:
        self._agent_path = agent_path
        self.agent: asyncssh.SSHAgentClient | None = None

    async def produce(self) -> AuthMethod | None:
        path = self._agent_path or os.environ.get(AGENT_SOCKET_ENV)
        if not path:
            return None

        try:
            agent = await asyncssh.connect_agent(path)
        except (OSError, asyncssh.Error) as e:
            logger.debug(f"ssh-agent at {path} unavailable: {e}")
            return None
        if agent is None:
            return None

        try:
            keys = await agent.get_keys()
        except (OSError, asyncssh.Error) as e:
            logger.warning(f"Failed to list ssh-agent keys: {e}")
            agent.close()
            await agent.wait_closed()
            return None

        if not keys:
            agent.close()
            await agent.wait_closed()
            return None

        self.agent = agent
        return AuthMethod(kind="publickey", source="ssh-agent", keys=list(keys))


@dataclass
class AuthMethods:
    """Ordered, priority-significant authentication methods.

    Holds any ssh-agent client opened while resolving; call :meth:`close`
    once the handshake that uses these methods is over.
    """

    methods: list[AuthMethod] = field(default_factory=list)
    agents: list[asyncssh.SSHAgentClient] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.methods)

    @property
    def kinds(self) -> list[str]:
        kinds: list[str] = []
        for method in self.methods:
            if method.kind not in kinds:
                kinds.append(method.kind)
        return kinds

    def connect_options(self) -> dict[str, Any]:
        """Translate the methods into ``asyncssh.connect`` keyword arguments.

        Only the sources listed here are used: default key files and an
        implicit agent lookup are disabled.
        """
        password = next((m.password for m in self.methods if m.kind == "password"), None)
        keys = [key for m in self.methods for key in m.keys]

        options: dict[str, Any] = {
            "password": password,
            "client_keys": keys or None,
            "agent_path": None,
        }
        if self.kinds:
            options["preferred_auth"] = ",".join(self.kinds)
        return options

    async def close(self) -> None:
        for agent in self.agents:
            agent.close()
            await agent.wait_closed()
        self.agents.clear()


class AuthResolver:
    """Build :class:`AuthMethods` from a :class:`ConnectionSpec`.

    Order is password, key file, inline key, then ssh-agent. A source that is
    absent or fails to decode is skipped; an empty result is returned as-is
    and surfaces later as a handshake authentication failure.
    """

    def __init__(self, spec: ConnectionSpec) -> None:
        self._spec = spec

    def providers(self) -> list[AuthProvider]:
        spec = self._spec
        return [
            PasswordProvider(spec.password),
            KeyFileProvider(spec.key_path, spec.passphrase),
            InlineKeyProvider(spec.private_key, spec.passphrase),
            AgentProvider(),
        ]

    async def resolve(self) -> AuthMethods:
        resolved = AuthMethods()
        for provider in self.providers():
            try:
                method = await provider.produce()
            except AuthResolutionError as e:
                logger.warning(f"Skipping auth source {e}")
                continue
            if method is None:
                continue
            resolved.methods.append(method)
            agent = getattr(provider, "agent", None)
            if agent is not None:
                resolved.agents.append(agent)

        logger.debug(
            f"Auth methods for {self._spec.user}@{self._spec.address}: "
            f"{[m.source for m in resolved.methods]}"
        )
        return resolved
