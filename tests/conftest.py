"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any

import asyncssh
import pytest

from fakes import FakeConnection
from mcp_ssh_relay.session import Session
from mcp_ssh_relay.types import ConnectionSpec


@pytest.fixture(autouse=True)
def no_ssh_agent(monkeypatch):
    """Keep a developer's running ssh-agent out of the tests."""
    monkeypatch.delenv("SSH_AUTH_SOCK", raising=False)


@pytest.fixture
def spec():
    return ConnectionSpec(user="drone-scp", host="localhost", port=22, password="1234")


@pytest.fixture
def make_session(spec):
    """Build a Session around a FakeConnection."""

    def _make(connection: FakeConnection, **overrides: Any) -> Session:
        session_spec = spec.model_copy(update=overrides) if overrides else spec
        return Session(session_spec, connection)

    return _make


@pytest.fixture(scope="session")
def ed25519_key():
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture(scope="session")
def ecdsa_key():
    return asyncssh.generate_private_key("ecdsa-sha2-nistp256")
