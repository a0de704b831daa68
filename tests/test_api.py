"""
Tests for sap_b1.api module.
"""

import pytest
from unittest.mock import patch

from fastapi.testclient import TestClient

from sap_b1 import __version__
from sap_b1.api.gateway import DiagnosticsGateway, create_app
from sap_b1.core.config import ConnectionConfig
from sap_b1.core.connection import ConnectionContext
from sap_b1.storage.backend import MemoryBackend

from conftest import BASE_URL, FakeTransport


HEADERS = {"x-api-key": "test-key"}


@pytest.fixture
def context(config):
    return ConnectionContext(config, backend=MemoryBackend(), transport=FakeTransport())


@pytest.fixture
def api(context):
    gateway = DiagnosticsGateway(context=context, api_key="test-key")
    return TestClient(create_app(gateway, validate_on_startup=False))


class TestGateway:
    """Tests for DiagnosticsGateway configuration."""

    @patch.dict("os.environ", {}, clear=True)
    def test_validate_requires_api_key(self, context):
        with pytest.raises(RuntimeError, match="SAP_B1_API_KEY"):
            DiagnosticsGateway(context=context).validate()

    @patch.dict("os.environ", {"SAP_B1_API_KEY": "env-key"}, clear=True)
    def test_validate_reports_missing_connection_settings(self):
        gateway = DiagnosticsGateway()
        assert gateway.api_key == "env-key"
        with pytest.raises(RuntimeError, match="Missing base_url"):
            gateway.validate()


class TestHealthEndpoints:
    """Tests for health endpoints."""

    def test_health_needs_no_key(self, api):
        r = api.get("/health")
        assert r.status_code == 200
        assert r.json() == {"ok": True, "version": __version__}

    def test_upstream_health(self, api):
        r = api.get("/health/upstream", headers=HEADERS)
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "healthy"
        assert body["company_db"] == "SBODEMOUS"
        assert body["connection"] == "default"

    def test_missing_key_is_rejected(self, api):
        assert api.get("/health/upstream").status_code == 422

    def test_wrong_key_is_rejected(self, api):
        r = api.get("/health/upstream", headers={"x-api-key": "nope"})
        assert r.status_code == 401

    @patch.dict("os.environ", {}, clear=True)
    def test_unconfigured_connection_is_unavailable(self):
        api = TestClient(create_app(DiagnosticsGateway(api_key="test-key"), validate_on_startup=False))
        r = api.get("/session", headers=HEADERS)
        assert r.status_code == 503
        assert "Missing base_url" in r.json()["detail"]


class TestSessionEndpoints:
    """Tests for session endpoints."""

    def test_no_session_yet(self, api):
        r = api.get("/session", headers=HEADERS)
        assert r.status_code == 200
        assert r.json()["has_valid_session"] is False

    def test_session_info(self, api, context):
        context.manager.get_session()
        body = api.get("/session", headers=HEADERS).json()
        assert body["has_valid_session"] is True
        assert body["session_id"] == "sess-000..."
        assert body["company_db"] == "SBODEMOUS"
        assert body["remaining_ttl"] > 0

    def test_logout(self, api, context):
        context.manager.get_session()
        r = api.delete("/session", headers=HEADERS)
        assert r.json() == {"ok": True, "connection": "default"}
        assert not context.manager.has_valid_session()


class TestPoolEndpoints:
    """Tests for pool endpoints."""

    def test_warmup_stats_drain(self, api):
        r = api.post("/pool/warmup", headers=HEADERS)
        assert r.json() == {"connection": "default", "action": "warmup", "count": 2}

        stats = api.get("/pool/stats", headers=HEADERS).json()
        assert stats["idle"] == 2
        assert stats["total"] == 2
        assert stats["max_size"] == 3

        r = api.post("/pool/drain", headers=HEADERS)
        assert r.json()["count"] == 2

    def test_warmup_with_count(self, api):
        r = api.post("/pool/warmup", params={"count": 3}, headers=HEADERS)
        assert r.json()["count"] == 3

    def test_warmup_rejects_zero(self, api):
        r = api.post("/pool/warmup", params={"count": 0}, headers=HEADERS)
        assert r.status_code == 422

    def test_cleanup(self, api):
        r = api.post("/pool/cleanup", headers=HEADERS)
        assert r.json() == {"connection": "default", "action": "cleanup", "count": 0}

    def test_pool_disabled(self):
        cfg = ConnectionConfig(BASE_URL, "DB", "u", "p")
        context = ConnectionContext(cfg, backend=MemoryBackend(), transport=FakeTransport())
        api = TestClient(create_app(DiagnosticsGateway(context=context, api_key="test-key"), validate_on_startup=False))
        r = api.get("/pool/stats", headers=HEADERS)
        assert r.status_code == 404


class TestCircuitBreakerEndpoints:
    """Tests for circuit breaker endpoints."""

    def test_state_and_reset(self, api, context):
        for _ in range(3):
            context.breaker.record_failure("Orders")

        body = api.get("/circuit-breaker", params={"scope": "Orders"}, headers=HEADERS).json()
        assert body["state"] == "open"
        assert body["failures"] == 3
        assert body["scope"] == "Orders"

        body = api.post("/circuit-breaker/reset", params={"scope": "Orders"}, headers=HEADERS).json()
        assert body["state"] == "closed"
        assert body["total_failures"] == 3

    def test_default_scope(self, api):
        body = api.get("/circuit-breaker", headers=HEADERS).json()
        assert body["scope"] == "*"
        assert body["state"] == "closed"
