"""
Shared test fixtures for the capbroker test suite.
"""

import os
import sys
import tempfile

import pytest
import pytest_asyncio

# Ensure capbroker is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from capbroker.broker.dispatcher import Dispatcher
from capbroker.broker.secret_store import SecretStore
from capbroker.broker.sessions import SessionManager
from capbroker.providers.env import EnvProvider
from capbroker.providers.filesystem import FilesystemProvider
from capbroker.providers.registry import ProviderRegistry
from capbroker.shared.audit_log import AuditLogger
from capbroker.shared.crypto import generate_master_key
from capbroker.shared.interfaces import IUpstreamClient
from capbroker.shared.models import ProxyResponse
from capbroker.shared.schemas import parse_broker_config

STRIPE_KEY = "sk_live_test_4f9a1c2e"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream(IUpstreamClient):
    """Records outbound requests and answers with a canned response."""

    def __init__(self, status: int = 200, body: str = '{"ok":true}', headers=None, error=None):
        self.status = status
        self.body = body
        self.headers = headers or {"Content-Type": "application/json"}
        self.error = error
        self.calls = []
        self.closed = False

    async def send(self, service, url, request, timeout_seconds):
        self.calls.append({"service": service, "url": url, "request": request, "timeout": timeout_seconds})
        if self.error is not None:
            raise self.error
        return ProxyResponse(status=self.status, body=self.body, headers=dict(self.headers))

    async def close(self):
        self.closed = True


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def master_key():
    return generate_master_key()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broker_config_data():
    """A small but complete broker configuration document."""
    return {
        "services": {
            "stripe": {
                "baseUrl": "https://api.stripe.com",
                "auth": {"type": "bearer", "key": "stripe/api_key"},
            },
            "bybit": {
                "baseUrl": "https://api.bybit.com",
                "auth": {
                    "type": "hmac-bybit",
                    "apiKey": "env://BYBIT_KEY",
                    "apiSecret": "env://BYBIT_SECRET",
                },
            },
        },
        "capabilities": {
            "stripe_readonly": {
                "service": "stripe",
                "ttl": "1h",
                "autoApprove": True,
                "rules": ["allow GET /v1/customers/*", "deny * *"],
            },
            "stripe_refunds": {
                "service": "stripe",
                "ttl": "15m",
                "requiresReason": True,
                "rules": [{"effect": "allow", "method": "POST", "path": "/v1/refunds"}],
            },
            "bybit_trading": {
                "service": "bybit",
                "ttl": "30m",
                "rules": ["allow GET *", "deny POST *"],
            },
        },
    }


@pytest.fixture
def broker_config(broker_config_data):
    return parse_broker_config(broker_config_data)


@pytest_asyncio.fixture
async def registry(tmp_dir, master_key, monkeypatch):
    """Registry with an initialized `local` filesystem provider and `env`."""
    monkeypatch.setenv("BYBIT_KEY", "bybit-key-123")
    monkeypatch.setenv("BYBIT_SECRET", "bybit-secret-456")
    reg = ProviderRegistry(default_provider="local")
    local = FilesystemProvider("local", {"path": os.path.join(tmp_dir, "secrets"), "master_key": master_key})
    reg.add(local)
    reg.add(EnvProvider("env", {}))
    await reg.initialize_all()
    await local.set_secret("stripe/api_key", STRIPE_KEY)
    yield reg
    await reg.dispose_all()


@pytest.fixture
def audit_log(tmp_dir):
    return AuditLogger(os.path.join(tmp_dir, "audit"))


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def sessions(clock):
    return SessionManager(clock=clock)


@pytest.fixture
def dispatcher(broker_config, registry, sessions, audit_log, upstream):
    return Dispatcher(
        broker_config=broker_config,
        secret_store=SecretStore(registry, max_retries=3, backoff_seconds=0),
        sessions=sessions,
        audit_log=audit_log,
        upstream=upstream,
        public_url="http://127.0.0.1:9119",
        upstream_timeout_seconds=5,
    )
