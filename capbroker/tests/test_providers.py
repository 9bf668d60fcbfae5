"""
Tests for the filesystem and env providers and the ProviderRegistry.
"""

import asyncio
import os
import stat
from unittest.mock import patch

import pytest
import pytest_asyncio

from capbroker.providers.env import EnvProvider
from capbroker.providers.filesystem import FilesystemProvider
from capbroker.providers.registry import ProviderRegistry
from capbroker.shared.crypto import generate_master_key
from capbroker.shared.errors import (
    ConfigurationError,
    InvalidSecretReferenceError,
    ProviderAuthError,
    ProviderInternalError,
    UnsupportedOperationError,
)
from capbroker.shared.interfaces import ISecretsProvider
from capbroker.shared.models import HealthCheckResult
from capbroker.shared.schemas import ProviderConfig


# ═══════════════════════════════════════════════════════════════
# FILESYSTEM PROVIDER
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestFilesystemProvider:
    @pytest.fixture
    def root(self, tmp_dir):
        return os.path.join(tmp_dir, "creds")

    @pytest_asyncio.fixture
    async def provider(self, root, master_key):
        p = FilesystemProvider("local", {"path": root, "master_key": master_key})
        await p.initialize()
        return p

    async def test_requires_master_key(self, root):
        with pytest.raises(ConfigurationError):
            FilesystemProvider("local", {"path": root})

    async def test_rejects_malformed_master_key(self, root):
        with pytest.raises(ConfigurationError):
            FilesystemProvider("local", {"path": root, "master_key": "c2hvcnQ="})

    async def test_accepts_camel_case_master_key(self, root, master_key):
        FilesystemProvider("local", {"path": root, "masterKey": master_key})

    async def test_operations_require_initialize(self, root, master_key):
        p = FilesystemProvider("local", {"path": root, "master_key": master_key})
        with pytest.raises(ProviderInternalError):
            await p.get_secret("x")

    async def test_initialize_creates_private_directory(self, provider, root):
        assert stat.S_IMODE(os.stat(root).st_mode) == 0o700

    async def test_initialize_is_idempotent(self, provider):
        await provider.initialize()
        await provider.initialize()

    async def test_set_then_get(self, provider):
        await provider.set_secret("stripe/api_key", "sk_live_abc")
        assert await provider.get_secret("stripe/api_key") == "sk_live_abc"

    async def test_read_is_idempotent(self, provider):
        await provider.set_secret("a", "value")
        assert await provider.get_secret("a") == await provider.get_secret("a") == "value"

    async def test_missing_secret_is_none(self, provider):
        assert await provider.get_secret("nope") is None

    async def test_file_is_private_and_encrypted(self, provider, root):
        await provider.set_secret("stripe/api_key", "sk_live_abc")
        path = os.path.join(root, "stripe", "api_key")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(os.path.dirname(path)).st_mode) == 0o700
        with open(path) as f:
            assert "sk_live_abc" not in f.read()

    async def test_overwrite(self, provider):
        await provider.set_secret("a", "one")
        await provider.set_secret("a", "two")
        assert await provider.get_secret("a") == "two"

    async def test_delete(self, provider):
        await provider.set_secret("a", "one")
        await provider.delete_secret("a")
        assert await provider.get_secret("a") is None
        await provider.delete_secret("a")

    async def test_list(self, provider):
        await provider.set_secret("stripe/api_key", "1")
        await provider.set_secret("stripe/webhook", "2")
        await provider.set_secret("github/token", "3")
        assert await provider.list_secrets() == ["github/token", "stripe/api_key", "stripe/webhook"]
        assert await provider.list_secrets("stripe") == ["stripe/api_key", "stripe/webhook"]

    async def test_delete_and_list_run_off_the_event_loop(self, provider):
        await provider.set_secret("a", "one")
        with patch("capbroker.providers.filesystem.asyncio.to_thread", wraps=asyncio.to_thread) as to_thread:
            assert await provider.list_secrets() == ["a"]
            await provider.delete_secret("a")
        assert [c.args[0] for c in to_thread.call_args_list] == [provider._list, provider._delete]
        assert await provider.list_secrets() == []

    async def test_wrong_master_key_is_auth_error(self, provider, root):
        await provider.set_secret("a", "value")
        other = FilesystemProvider("local", {"path": root, "master_key": generate_master_key()})
        await other.initialize()
        with pytest.raises(ProviderAuthError):
            await other.get_secret("a")

    async def test_traversal_never_leaves_root(self, provider, tmp_dir):
        with open(os.path.join(tmp_dir, "outside"), "w") as f:
            f.write("not a secret")
        with pytest.raises(InvalidSecretReferenceError):
            await provider.get_secret("../outside")

    async def test_symlink_escape_blocked(self, provider, root, tmp_dir):
        outside = os.path.join(tmp_dir, "elsewhere")
        os.makedirs(outside)
        os.symlink(outside, os.path.join(root, "link"))
        with pytest.raises(ProviderAuthError):
            await provider.get_secret("link/secret")

    async def test_health_check(self, provider):
        result = await provider.health_check()
        assert result.healthy
        assert result.latency_ms is not None

    async def test_health_check_missing_root(self, master_key, tmp_dir):
        p = FilesystemProvider("local", {"path": os.path.join(tmp_dir, "missing"), "master_key": master_key})
        result = await p.health_check()
        assert not result.healthy
        assert "not found" in result.error


# ═══════════════════════════════════════════════════════════════
# ENV PROVIDER
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestEnvProvider:
    async def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("STRIPE_KEY", "sk_env")
        p = EnvProvider("env", {})
        await p.initialize()
        assert await p.get_secret("STRIPE_KEY") == "sk_env"

    async def test_missing_is_none(self, monkeypatch):
        monkeypatch.delenv("CAPBROKER_TEST_UNSET", raising=False)
        p = EnvProvider("env", {})
        await p.initialize()
        assert await p.get_secret("CAPBROKER_TEST_UNSET") is None

    async def test_prefix(self, monkeypatch):
        monkeypatch.setenv("BROKER_STRIPE", "sk_prefixed")
        monkeypatch.setenv("BROKER_GITHUB", "gh")
        p = EnvProvider("env", {"prefix": "BROKER_"})
        await p.initialize()
        assert await p.get_secret("STRIPE") == "sk_prefixed"
        assert set(await p.list_secrets()) >= {"STRIPE", "GITHUB"}
        assert await p.list_secrets("STR") == ["STRIPE"]

    async def test_slash_rejected(self):
        p = EnvProvider("env", {})
        await p.initialize()
        with pytest.raises(InvalidSecretReferenceError):
            await p.get_secret("a/b")

    async def test_writes_unsupported(self):
        p = EnvProvider("env", {})
        await p.initialize()
        with pytest.raises(UnsupportedOperationError):
            await p.set_secret("X", "y")

    async def test_health(self):
        assert (await EnvProvider("env", {}).health_check()).healthy


# ═══════════════════════════════════════════════════════════════
# PROVIDER REGISTRY
# ═══════════════════════════════════════════════════════════════

class _BrokenDisposeProvider(ISecretsProvider):
    type = "broken"

    def __init__(self, name, config=None):
        super().__init__(name)
        self.disposed = False

    async def initialize(self):
        pass

    async def get_secret(self, path):
        return f"value-of-{path}"

    async def health_check(self):
        return HealthCheckResult(healthy=True)

    async def dispose(self):
        self.disposed = True
        raise RuntimeError("socket already closed")


class TestRegistryConfiguration:
    def test_builtin_types(self):
        assert ProviderRegistry().types == ["env", "filesystem", "vault"]

    def test_duplicate_type_rejected(self):
        reg = ProviderRegistry()
        with pytest.raises(ConfigurationError):
            reg.register_type("env", lambda c: EnvProvider(c.name, c.config))

    def test_unknown_type_lists_available(self):
        reg = ProviderRegistry()
        with pytest.raises(ConfigurationError) as exc:
            reg.configure([ProviderConfig(name="x", type="s3")])
        assert "filesystem" in exc.value.message

    def test_validates_all_before_constructing(self, master_key, tmp_dir):
        reg = ProviderRegistry()
        configs = [
            ProviderConfig(name="local", type="filesystem", config={"path": tmp_dir, "master_key": master_key}),
            ProviderConfig(name="bad", type="nope"),
        ]
        with pytest.raises(ConfigurationError):
            reg.configure(configs)
        assert reg.names == set()

    def test_duplicate_name_rejected(self):
        reg = ProviderRegistry()
        reg.configure([ProviderConfig(name="env", type="env")])
        with pytest.raises(ConfigurationError):
            reg.configure([ProviderConfig(name="env", type="env")])

    def test_custom_type(self):
        reg = ProviderRegistry()
        reg.register_type("broken", lambda c: _BrokenDisposeProvider(c.name))
        reg.configure([ProviderConfig(name="b", type="broken")])
        assert isinstance(reg.get("b"), _BrokenDisposeProvider)


@pytest.mark.asyncio
class TestRegistryResolution:
    async def test_resolve_scheme(self, registry):
        assert await registry.resolve("env://BYBIT_KEY") == "bybit-key-123"

    async def test_resolve_bare_path_uses_default(self, registry):
        from conftest import STRIPE_KEY
        assert await registry.resolve("stripe/api_key") == STRIPE_KEY

    async def test_resolve_unknown_provider(self, registry):
        with pytest.raises(ConfigurationError) as exc:
            await registry.resolve("vault://x")
        assert "local" in exc.value.message

    async def test_resolve_missing_is_none(self, registry):
        assert await registry.resolve("local://missing/secret") is None

    async def test_health_check_all(self, registry):
        results = await registry.health_check_all()
        assert set(results) == {"local", "env"}
        assert all(r.healthy for r in results.values())

    async def test_dispose_all_collects_failures(self):
        reg = ProviderRegistry()
        broken = _BrokenDisposeProvider("b")
        env = EnvProvider("env", {})
        reg.add(broken)
        reg.add(env)
        await reg.initialize_all()
        with pytest.raises(ProviderInternalError) as exc:
            await reg.dispose_all()
        assert "socket already closed" in exc.value.message
        assert broken.disposed
        assert reg.names == set()
