"""Tests for the gateway application, its routes and the auth middleware."""

from unittest.mock import patch

import httpx
import pytest

from chitty_connect.mcp.tools import MCP_TOOLS
from chitty_connect.servers.main import build_gateway, create_app
from chitty_connect.utils.audit import AuditAction, AuditResult
from chitty_connect.utils.metrics import MetricsCollector
from chitty_connect.utils.proof import AsyncProofQueue
from chitty_connect.utils.rate_limit import RateLimiter
from chitty_connect.utils.storage import LocalFileStore


class TestPublicRoutes:
    """Tests for health, manifest and export routes."""

    @pytest.mark.parametrize("path", ["/health", "/healthz"])
    def test_health(self, client, path):
        response = client.get(path)
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "chittyconnect", "version": "2.0.2"}

    def test_ready(self, client):
        assert client.get("/readyz").json() == {"status": "ready", "server": "chittyconnect"}

    def test_manifest_needs_no_key(self, client):
        response = client.get("/mcp/manifest")
        assert response.status_code == 200
        manifest = response.json()
        assert manifest["tools"] == len(MCP_TOOLS)
        assert manifest["endpoint"] == "/mcp"
        assert manifest["authentication"]["apiKeyHeader"] == "X-ChittyOS-API-Key"

    def test_health_suffix_is_public(self, client):
        # no route behind it, but it is not an auth failure
        assert client.get("/mcp/health").status_code == 404

    def test_download_export(self, client, gateway_config):
        LocalFileStore(gateway_config.exports_dir).put("exports/P-1.pdf", b"%PDF-1.7")
        response = client.get("/api/v1/exports/P-1.pdf")
        assert response.status_code == 200
        assert response.content == b"%PDF-1.7"
        assert response.headers["content-type"] == "application/pdf"

    def test_download_missing_export(self, client):
        response = client.get("/api/v1/exports/nothing.pdf")
        assert response.status_code == 404
        assert response.json() == {"error": "Export not found"}

    def test_download_without_store(self, make_client):
        client = make_client(exports_dir=None)
        assert client.get("/api/v1/exports/P-1.pdf").status_code == 404


class TestApiKeyAuthentication:
    """Tests for API-key protected MCP paths."""

    def test_missing_key(self, client):
        response = client.get("/mcp/tools/list")
        assert response.status_code == 401
        assert response.json() == {
            "error": "Authentication required",
            "message": "Provide X-ChittyOS-API-Key header",
        }

    def test_unknown_key(self, client):
        with patch("chitty_connect.servers.main.audit") as mock_audit:
            response = client.get(
                "/mcp/tools/list", headers={"X-ChittyOS-API-Key": "chitty_nope"}
            )
        assert response.status_code == 403
        assert response.json() == {"error": "Invalid API key"}
        assert mock_audit.call_args.args == (
            AuditAction.AUTHENTICATION_FAILURE,
            AuditResult.DENIED,
        )

    def test_revoked_key(self, client, key_store, api_key):
        key_store.revoke(api_key)
        response = client.get("/mcp/tools/list", headers={"X-ChittyOS-API-Key": api_key})
        assert response.status_code == 403
        assert response.json() == {"error": "API key inactive"}

    def test_expired_key(self, client, key_store):
        key, _ = key_store.create("old", expires_at="2000-01-01T00:00:00Z")
        response = client.get("/mcp/tools/list", headers={"X-ChittyOS-API-Key": key})
        assert response.status_code == 403
        assert response.json() == {"error": "API key expired"}

    def test_bearer_fallback(self, client, api_key):
        response = client.get("/mcp/tools/list", headers={"Authorization": f"Bearer {api_key}"})
        assert response.status_code == 200

    def test_header_wins_over_bearer(self, client, api_key):
        response = client.get(
            "/mcp/tools/list",
            headers={"X-ChittyOS-API-Key": api_key, "Authorization": "Bearer chitty_nope"},
        )
        assert response.status_code == 200

    def test_corrupt_key_file(self, client, gateway_config):
        with open(gateway_config.api_keys_path, "w") as f:
            f.write("{broken")
        response = client.get("/mcp/tools/list", headers={"X-ChittyOS-API-Key": "chitty_x"})
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication error"}

    def test_per_key_rate_limit(self, make_client, key_store):
        key, _ = key_store.create("limited", rate_limit=1)
        client = make_client(rate_limiter=RateLimiter())
        headers = {"X-ChittyOS-API-Key": key}

        assert client.get("/mcp/tools/list", headers=headers).status_code == 200
        response = client.get("/mcp/tools/list", headers=headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json() == {
            "error": "Rate limit exceeded",
            "message": "Rate limit exceeded: 1 requests per 60 seconds",
        }

    def test_default_key_rate_limit(self, make_client, key_store):
        key, _ = key_store.create("unlimited", rate_limit=0)
        client = make_client(rate_limiter=RateLimiter(api_key_limit=1))
        headers = {"X-ChittyOS-API-Key": key}

        assert client.get("/mcp/tools/list", headers=headers).status_code == 200
        assert client.get("/mcp/tools/list", headers=headers).status_code == 429

    def test_options_passes_through(self, client):
        response = client.options("/mcp")
        assert response.status_code != 401

    def test_oauth_host_subpaths_use_api_keys(self, make_client, api_key):
        client = make_client(base_url="https://mcp.chitty.cc")
        assert client.get("/mcp/tools/list").status_code == 401
        response = client.get("/mcp/tools/list", headers={"X-ChittyOS-API-Key": api_key})
        assert response.status_code == 200

    def test_custom_mcp_path(self, make_client, api_key):
        client = make_client(mcp_path="/gateway")
        ping = {"jsonrpc": "2.0", "id": 1, "method": "ping"}
        assert client.post("/gateway", json=ping).status_code == 401
        response = client.post(
            "/gateway",
            json=ping,
            headers={"X-ChittyOS-API-Key": api_key},
        )
        assert response.json()["result"] == {}

    def test_rejection_echoes_session_header(self, client):
        ping = {"jsonrpc": "2.0", "id": 1, "method": "ping"}
        response = client.post("/mcp", json=ping, headers={"Mcp-Session-Id": "s-1"})
        assert response.status_code == 401
        assert response.headers["Mcp-Session-Id"] == "s-1"

        response = client.post(
            "/mcp",
            json=ping,
            headers={"X-ChittyOS-API-Key": "chitty_nope", "Mcp-Session-Id": "s-2"},
        )
        assert response.status_code == 403
        assert response.headers["Mcp-Session-Id"] == "s-2"

    def test_rejection_mints_session_header(self, client):
        response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})
        assert response.status_code == 401
        assert response.headers["Mcp-Session-Id"]

    def test_rate_limited_mcp_request_has_session_header(self, make_client, key_store):
        key, _ = key_store.create("limited", rate_limit=1)
        client = make_client(rate_limiter=RateLimiter())
        headers = {"X-ChittyOS-API-Key": key, "Mcp-Session-Id": "s-3"}
        ping = {"jsonrpc": "2.0", "id": 1, "method": "ping"}

        assert client.post("/mcp", json=ping, headers=headers).status_code == 200
        response = client.post("/mcp", json=ping, headers=headers)
        assert response.status_code == 429
        assert response.headers["Mcp-Session-Id"] == "s-3"

    def test_subpath_rejection_has_no_session_header(self, client):
        response = client.get("/mcp/tools/list")
        assert response.status_code == 401
        assert "Mcp-Session-Id" not in response.headers


class TestMetricsEndpoint:
    """Tests for GET /metrics and request tracking."""

    def test_exposes_prometheus_text(self, make_client, api_key):
        client = make_client(metrics=MetricsCollector())
        client.post(
            "/mcp/tools/call",
            json={"name": "chitty_bogus"},
            headers={"X-ChittyOS-API-Key": api_key},
        )

        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'chittyconnect_tool_calls_total{tool_name="unknown",status="error"} 1.0' in (
            response.text
        )
        assert "chittyconnect_http_requests_total" in response.text

    def test_disabled(self, make_client):
        response = make_client(metrics=MetricsCollector(enabled=False)).get("/metrics")
        assert response.status_code == 503
        assert response.text == "# Metrics collection not enabled\n"

    def test_needs_no_key(self, make_client):
        assert make_client(base_url="https://mcp.chitty.cc").get("/metrics").status_code == 200

    def test_rejected_requests_are_counted(self, make_client):
        metrics = MetricsCollector()
        client = make_client(metrics=metrics)
        assert client.get("/mcp/tools/list").status_code == 401
        assert client.get("/health").status_code == 200

        def count(method, path, status):
            return metrics.registry.get_sample_value(
                "chittyconnect_http_requests_total",
                {"method": method, "path": path, "status": status},
            )

        assert count("GET", "/mcp/tools/list", "401") == 1.0
        assert count("GET", "/health", "200") == 1.0
        assert metrics.registry.get_sample_value("chittyconnect_http_requests_in_progress") == 0.0

    def test_global_collector_from_env(self, monkeypatch, gateway_config):
        monkeypatch.setenv("METRICS_ENABLED", "false")
        app = create_app(gateway_config, env={}, http_client=httpx.AsyncClient())
        assert app.state.gateway.metrics.is_enabled is False


class TestBuildGateway:
    """Tests for build_gateway."""

    def test_without_proof_token(self, gateway_config):
        gateway = build_gateway(gateway_config, env={}, http_client=httpx.AsyncClient())
        assert gateway.proof_queue is None
        assert gateway.file_store is not None
        assert gateway.rate_limiter is None

    def test_with_proof_token(self, gateway_config):
        gateway = build_gateway(
            gateway_config,
            env={"CHITTY_PROOF_TOKEN": "proof-token"},
            http_client=httpx.AsyncClient(),
        )
        assert isinstance(gateway.proof_queue, AsyncProofQueue)
        assert gateway.proof_queue.max_attempts == gateway_config.proof_queue_max_attempts

    def test_without_exports_dir(self, gateway_config):
        gateway_config.exports_dir = None
        gateway = build_gateway(gateway_config, env={}, http_client=httpx.AsyncClient())
        assert gateway.file_store is None


class TestCreateApp:
    """Tests for create_app."""

    def test_global_rate_limiter_disabled_by_env(self, monkeypatch, gateway_config):
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        app = create_app(gateway_config, env={}, http_client=httpx.AsyncClient())
        assert app.state.gateway.rate_limiter is None

    def test_global_rate_limiter_from_env(self, monkeypatch, gateway_config):
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
        monkeypatch.setenv("RATE_LIMIT_TOOL_REQUESTS", "5")
        app = create_app(gateway_config, env={}, http_client=httpx.AsyncClient())
        assert app.state.gateway.rate_limiter.tool_limit == 5

    def test_lifespan_runs_proof_queue(self, make_client):
        client = make_client(env={"CHITTY_PROOF_TOKEN": "proof-token"})
        queue = client.app.state.gateway.proof_queue

        with patch("chitty_connect.servers.main.audit") as mock_audit:
            with client:
                assert queue._worker is not None
                assert client.get("/health").status_code == 200
            actions = [call.args[0] for call in mock_audit.call_args_list]

        assert actions == [AuditAction.SERVER_STARTED, AuditAction.SERVER_STOPPED]
        assert queue._worker is None
        assert queue._closed
