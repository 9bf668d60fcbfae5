"""
Tests for the FastAPI surface.
Global state (_dispatcher, _tools) is patched with a real Dispatcher wired to
a fake upstream.
"""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from capbroker.api.app import app
from capbroker.broker.tools import BrokerToolExecutor
from conftest import STRIPE_KEY


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def wired(dispatcher):
    tools = BrokerToolExecutor(dispatcher)
    with patch("capbroker.api.app._dispatcher", dispatcher), \
         patch("capbroker.api.app._tools", tools):
        yield dispatcher


# ═══════════════════════════════════════════════════════════════
# HEALTH
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestHealthEndpoints:
    async def test_health_returns_ok(self):
        async with _client() as client:
            resp = await client.get("/api/health")
            assert resp.status_code == 200
            data = resp.json()
            assert data["status"] == "ok"
            assert "timestamp" in data

    async def test_request_id_header(self):
        async with _client() as client:
            resp = await client.get("/api/health")
            assert len(resp.headers["X-Request-ID"]) == 12

    async def test_providers_health_503_when_not_ready(self):
        with patch("capbroker.api.app._dispatcher", None):
            async with _client() as client:
                resp = await client.get("/api/providers/health")
                assert resp.status_code == 503

    async def test_providers_health(self, wired):
        async with _client() as client:
            resp = await client.get("/api/providers/health")
            assert resp.status_code == 200
            data = resp.json()
            assert data["healthy"] is True
            assert set(data["providers"]) == {"local", "env"}


# ═══════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestSessionEndpoints:
    async def test_list_sessions_truncates_ids(self, wired):
        access = await wired.issue_http_access("stripe_readonly")
        session_id = access["headers"]["Authorization"].split(" ", 1)[1]
        async with _client() as client:
            resp = await client.get("/api/sessions")
            data = resp.json()
            assert data["count"] == 1
            assert data["sessions"][0]["capability"] == "stripe_readonly"
            assert data["sessions"][0]["id"] != session_id
            assert session_id not in resp.text

    async def test_revoke_session(self, wired):
        access = await wired.issue_http_access("stripe_readonly")
        session_id = access["headers"]["Authorization"].split(" ", 1)[1]
        async with _client() as client:
            resp = await client.delete(f"/api/sessions/{session_id}")
            assert resp.status_code == 200
            assert resp.json() == {"revoked": True}
            assert wired.sessions.get_session(session_id) is None

    async def test_revoke_unknown_session(self, wired):
        async with _client() as client:
            resp = await client.delete("/api/sessions/sess_nope")
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "SESSION_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════
# TOOLS
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestToolEndpoints:
    async def test_tools_503_when_not_ready(self):
        with patch("capbroker.api.app._tools", None):
            async with _client() as client:
                resp = await client.get("/api/tools")
                assert resp.status_code == 503

    async def test_list_tools(self, wired):
        async with _client() as client:
            resp = await client.get("/api/tools")
            names = [t["name"] for t in resp.json()["tools"]]
            assert names == ["list_services", "execute", "get_http_access"]

    async def test_call_list_services(self, wired):
        async with _client() as client:
            resp = await client.post("/api/tools/list_services")
            data = resp.json()
            assert data["success"] is True
            assert len(data["result"]) == 3

    async def test_call_execute(self, wired, upstream):
        async with _client() as client:
            resp = await client.post("/api/tools/execute", json={
                "capability": "stripe_readonly", "method": "GET", "path": "/v1/customers/cus_1",
            })
            data = resp.json()
            assert data["success"] is True
            assert data["result"]["status"] == 200
            assert STRIPE_KEY not in resp.text

    async def test_call_execute_denied(self, wired):
        async with _client() as client:
            resp = await client.post("/api/tools/execute", json={
                "capability": "stripe_readonly", "method": "POST", "path": "/v1/charges",
            })
            assert resp.status_code == 200
            data = resp.json()
            assert data["success"] is False
            assert data["error"]["code"] == "POLICY_DENIED"

    async def test_call_execute_header_injection(self, wired, upstream):
        async with _client() as client:
            resp = await client.post("/api/tools/execute", json={
                "capability": "stripe_readonly", "method": "GET", "path": "/v1/customers/cus_1",
                "headers": {"X-Note": "a\r\nInjected: 1"},
            })
            assert resp.status_code == 200
            data = resp.json()
            assert data["success"] is False
            assert data["error"]["code"] == "BAD_REQUEST"
        assert upstream.calls == []

    async def test_call_execute_unexpected_failure_is_sanitized(self, wired, upstream):
        upstream.error = ValueError("Forbidden control character detected in headers")
        async with _client() as client:
            resp = await client.post("/api/tools/execute", json={
                "capability": "stripe_readonly", "method": "GET", "path": "/v1/customers/cus_1",
            })
            assert resp.status_code == 200
            data = resp.json()
            assert data["error"]["code"] == "UPSTREAM_FAILED"
            assert "Forbidden" not in resp.text

    async def test_non_object_arguments(self, wired):
        async with _client() as client:
            resp = await client.post("/api/tools/execute", json=["not", "an", "object"])
            assert resp.status_code == 400

    async def test_malformed_json(self, wired):
        async with _client() as client:
            resp = await client.post(
                "/api/tools/execute", content=b"{oops", headers={"Content-Type": "application/json"},
            )
            assert resp.status_code == 400


# ═══════════════════════════════════════════════════════════════
# SESSION-BOUND PROXY
# ═══════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestProxyEndpoint:
    async def test_proxy_with_session(self, wired, upstream):
        upstream.body = '{"id":"cus_1"}'
        access = await wired.issue_http_access("stripe_readonly")
        async with _client() as client:
            resp = await client.get(
                "/stripe/v1/customers/cus_1?expand=sources", headers=access["headers"],
            )
            assert resp.status_code == 200
            assert resp.json() == {"id": "cus_1"}
        call = upstream.calls[0]
        assert call["url"] == "https://api.stripe.com/v1/customers/cus_1?expand=sources"
        assert call["request"].headers["Authorization"] == f"Bearer {STRIPE_KEY}"

    async def test_proxy_passes_upstream_status(self, wired, upstream):
        upstream.status = 429
        upstream.headers = {"Content-Type": "application/json", "Retry-After": "2"}
        access = await wired.issue_http_access("stripe_readonly")
        async with _client() as client:
            resp = await client.get("/stripe/v1/customers/cus_1", headers=access["headers"])
            assert resp.status_code == 429
            assert resp.headers["retry-after"] == "2"

    async def test_proxy_without_bearer(self, wired, upstream):
        async with _client() as client:
            resp = await client.get("/stripe/v1/customers/cus_1")
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "SESSION_NOT_FOUND"
        assert upstream.calls == []

    async def test_proxy_forged_session(self, wired, upstream):
        async with _client() as client:
            resp = await client.get(
                "/stripe/v1/customers/cus_1", headers={"Authorization": "Bearer sess_forged"},
            )
            assert resp.status_code == 401
        assert upstream.calls == []

    async def test_proxy_policy_denied(self, wired, upstream):
        access = await wired.issue_http_access("stripe_readonly")
        async with _client() as client:
            resp = await client.post("/stripe/v1/customers", headers=access["headers"], json={"email": "a@b.c"})
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "POLICY_DENIED"
        assert upstream.calls == []

    async def test_proxy_session_bound_to_service(self, wired, upstream):
        access = await wired.issue_http_access("stripe_readonly")
        async with _client() as client:
            resp = await client.get("/bybit/v5/market/time", headers=access["headers"])
            assert resp.status_code == 401

    async def test_proxy_expired_session(self, wired, clock):
        access = await wired.issue_http_access("stripe_readonly")
        clock.advance(3601)
        async with _client() as client:
            resp = await client.get("/stripe/v1/customers/cus_1", headers=access["headers"])
            assert resp.status_code == 401

    async def test_proxy_503_when_not_ready(self):
        with patch("capbroker.api.app._dispatcher", None):
            async with _client() as client:
                resp = await client.get("/stripe/v1/x", headers={"Authorization": "Bearer sess_x"})
                assert resp.status_code == 503
