"""Tests for authentication method resolution."""

import logging

import asyncssh
import pytest

from mcp_ssh_relay import auth as auth_module
from mcp_ssh_relay.auth import AuthResolver
from mcp_ssh_relay.types import ConnectionSpec


class FakeAgent:
    def __init__(self, keys):
        self._keys = keys
        self.closed = False

    async def get_keys(self):
        return self._keys

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def make_spec(**kwargs) -> ConnectionSpec:
    return ConnectionSpec(user="drone-scp", host="localhost", **kwargs)


@pytest.fixture
def key_file(tmp_path, ed25519_key):
    path = tmp_path / "id_ed25519"
    path.write_bytes(ed25519_key.export_private_key())
    return path


class TestAuthResolver:
    """Tests for AuthResolver.resolve."""

    @pytest.mark.asyncio
    async def test_password_only(self):
        """Test that a lone password disables key and agent lookup."""
        methods = await AuthResolver(make_spec(password="1234")).resolve()

        assert methods.kinds == ["password"]
        options = methods.connect_options()
        assert options["password"] == "1234"
        assert options["client_keys"] is None
        assert options["agent_path"] is None
        assert options["preferred_auth"] == "password"

    @pytest.mark.asyncio
    async def test_order_password_then_keys(self, key_file, ecdsa_key):
        """Test that password comes before key file, then inline key."""
        inline = ecdsa_key.export_private_key().decode()
        spec = make_spec(password="1234", key_path=str(key_file), private_key=inline)

        methods = await AuthResolver(spec).resolve()

        assert [m.source for m in methods.methods] == [
            "password",
            f"key file {key_file}",
            "inline key",
        ]
        options = methods.connect_options()
        assert options["preferred_auth"] == "password,publickey"
        assert [k.get_fingerprint() for k in options["client_keys"]] == [
            key.get_fingerprint()
            for key in (asyncssh.import_private_key(key_file.read_bytes()), ecdsa_key)
        ]

    @pytest.mark.asyncio
    async def test_key_file_read_off_event_loop(self, monkeypatch, key_file):
        """Test that the key file is read in a worker thread."""
        to_thread = auth_module.asyncio.to_thread
        calls = []

        async def recording_to_thread(func, *args):
            calls.append((func, args))
            return await to_thread(func, *args)

        monkeypatch.setattr(auth_module.asyncio, "to_thread", recording_to_thread)

        methods = await AuthResolver(make_spec(key_path=str(key_file))).resolve()

        assert methods.kinds == ["publickey"]
        assert calls == [(auth_module._read_key_file, (str(key_file),))]

    @pytest.mark.asyncio
    async def test_missing_key_file_is_skipped(self, tmp_path, caplog):
        """Test that an unreadable key file is logged and skipped."""
        spec = make_spec(password="1234", key_path=str(tmp_path / "missing"))

        with caplog.at_level(logging.WARNING, logger="mcp_ssh_relay.auth"):
            methods = await AuthResolver(spec).resolve()

        assert methods.kinds == ["password"]
        assert "Skipping auth source key file" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_inline_key_is_skipped(self):
        """Test that garbage key text is skipped rather than fatal."""
        methods = await AuthResolver(make_spec(private_key="appleboy")).resolve()

        assert len(methods) == 0
        assert methods.connect_options()["client_keys"] is None

    @pytest.mark.asyncio
    async def test_encrypted_key_with_passphrase(self, ecdsa_key):
        """Test decoding an encrypted key with the right passphrase."""
        encrypted = ecdsa_key.export_private_key("pkcs8-pem", passphrase="1234").decode()

        methods = await AuthResolver(
            make_spec(private_key=encrypted, passphrase="1234")
        ).resolve()

        (method,) = methods.methods
        assert method.keys[0].get_fingerprint() == ecdsa_key.get_fingerprint()

    @pytest.mark.asyncio
    async def test_encrypted_key_wrong_passphrase(self, ecdsa_key):
        """Test that a wrong passphrase skips the key."""
        encrypted = ecdsa_key.export_private_key("pkcs8-pem", passphrase="1234").decode()

        methods = await AuthResolver(
            make_spec(password="1234", private_key=encrypted, passphrase="wrong")
        ).resolve()

        assert methods.kinds == ["password"]

    @pytest.mark.asyncio
    async def test_encrypted_key_without_passphrase(self, ecdsa_key):
        """Test that an encrypted key without a passphrase is skipped."""
        encrypted = ecdsa_key.export_private_key("pkcs8-pem", passphrase="1234").decode()

        methods = await AuthResolver(make_spec(private_key=encrypted)).resolve()

        assert len(methods) == 0

    @pytest.mark.asyncio
    async def test_no_sources(self):
        """Test that no credentials resolve to an empty method list."""
        methods = await AuthResolver(make_spec()).resolve()

        assert len(methods) == 0
        assert "preferred_auth" not in methods.connect_options()


class TestAgentProvider:
    """Tests for ssh-agent keys."""

    @pytest.mark.asyncio
    async def test_agent_keys_come_last(self, monkeypatch, ed25519_key):
        """Test that agent keys follow the password and the agent is closed."""
        agent = FakeAgent([ed25519_key])
        paths = []

        async def fake_connect_agent(path):
            paths.append(path)
            return agent

        monkeypatch.setenv("SSH_AUTH_SOCK", "/tmp/agent.sock")
        monkeypatch.setattr(auth_module.asyncssh, "connect_agent", fake_connect_agent)

        methods = await AuthResolver(make_spec(password="1234")).resolve()

        assert paths == ["/tmp/agent.sock"]
        assert [m.source for m in methods.methods] == ["password", "ssh-agent"]
        assert methods.agents == [agent]
        assert not agent.closed

        await methods.close()
        assert agent.closed
        assert methods.agents == []

    @pytest.mark.asyncio
    async def test_empty_agent_is_skipped(self, monkeypatch):
        """Test that an agent holding no keys contributes nothing."""
        agent = FakeAgent([])

        async def fake_connect_agent(path):
            return agent

        monkeypatch.setenv("SSH_AUTH_SOCK", "/tmp/agent.sock")
        monkeypatch.setattr(auth_module.asyncssh, "connect_agent", fake_connect_agent)

        methods = await AuthResolver(make_spec()).resolve()

        assert len(methods) == 0
        assert agent.closed

    @pytest.mark.asyncio
    async def test_unreachable_agent_is_skipped(self, monkeypatch, tmp_path):
        """Test that a dangling agent socket is ignored."""
        monkeypatch.setenv("SSH_AUTH_SOCK", str(tmp_path / "agent.sock"))

        methods = await AuthResolver(make_spec(password="1234")).resolve()

        assert methods.kinds == ["password"]
        assert methods.agents == []
