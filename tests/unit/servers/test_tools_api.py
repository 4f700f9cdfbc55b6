"""Unit tests for the internal tools and resources REST endpoints."""

import json
from unittest.mock import patch

import httpx
import pytest
from starlette.datastructures import URL
from starlette.requests import Request

from chitty_connect.mcp.upstream import error_result
from chitty_connect.servers.tools_api import (
    bearer_token,
    derive_tool_error_status,
    resolve_internal_base_url,
)
from chitty_connect.utils.audit import AuditAction
from chitty_connect.utils.metrics import MetricsCollector
from chitty_connect.utils.rate_limit import RateLimiter


def make_request(headers: dict[str, str]) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        }
    )


class TestDeriveToolErrorStatus:
    """Tests for derive_tool_error_status."""

    @pytest.mark.parametrize(
        "message,status",
        [
            ("Unknown tool: chitty_x", 400),
            ("Permission denied: Action \"seal\" requires trust level 4, got 1", 403),
            ("Authentication required: No service token available for ChittyID", 401),
            ("Missing API key", 401),
            ("Invalid API key", 401),
            ("Rate limit exceeded for tool 'x': 1 requests per 60 seconds", 429),
            ("ChittyID error (404): not found", 404),
            ("Ledger error (503)", 503),
            ("ChittyID error (200): plain", 500),
            ("Error executing chitty_ledger_stats: connection refused", 500),
            ("Fact minting blocked: evidence_id \"E\" not found in ChittyLedger (404). x", 500),
        ],
    )
    def test_status(self, message, status):
        assert derive_tool_error_status(error_result(message)) == status

    def test_empty_content(self):
        assert derive_tool_error_status({"content": [], "isError": True}) == 500


class TestHelpers:
    def test_resolve_internal_base_url(self):
        assert (
            resolve_internal_base_url(URL("https://mcp.chitty.cc/mcp"), "https://x")
            == "https://connect.chitty.cc"
        )
        assert (
            resolve_internal_base_url(URL("http://localhost:8000/mcp/tools/call"), "https://x")
            == "http://localhost:8000"
        )
        assert resolve_internal_base_url(URL("/mcp"), "https://default/") == "https://default"

    def test_bearer_token(self):
        assert bearer_token(make_request({"Authorization": "Bearer abc"})) == "abc"
        assert bearer_token(make_request({"Authorization": "bearer  abc "})) == "abc"
        assert bearer_token(make_request({"Authorization": "Basic abc"})) is None
        assert bearer_token(make_request({"Authorization": "Bearer "})) is None
        assert bearer_token(make_request({})) is None


class TestToolsEndpoints:
    """Tests for /mcp/tools/*."""

    def test_tools_list(self, client, api_key):
        response = client.get("/mcp/tools/list", headers={"X-ChittyOS-API-Key": api_key})
        assert response.status_code == 200
        names = {tool["name"] for tool in response.json()["tools"]}
        assert "chitty_fact_seal" in names

    def test_invalid_json(self, client, api_key):
        response = client.post(
            "/mcp/tools/call",
            content=b"{bad",
            headers={"X-ChittyOS-API-Key": api_key, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON in request body"}

    def test_body_not_utf8(self, client, api_key):
        response = client.post(
            "/mcp/tools/call",
            content=b'{"name": "\xff"}',
            headers={"X-ChittyOS-API-Key": api_key, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON in request body"}

    def test_non_object_body(self, client, api_key):
        response = client.post(
            "/mcp/tools/call", json=[1, 2], headers={"X-ChittyOS-API-Key": api_key}
        )
        assert response.status_code == 400

    def test_unknown_tool(self, client, api_key):
        response = client.post(
            "/mcp/tools/call",
            json={"name": "chitty_bogus", "arguments": {}},
            headers={"X-ChittyOS-API-Key": api_key},
        )
        assert response.status_code == 400
        assert response.json()["isError"] is True

    def test_success_forwards_caller_token(self, client, upstream, api_key):
        upstream.add(
            "GET",
            "https://connect.chitty.cc/api/chittycases/C-1",
            httpx.Response(200, json={"case_id": "C-1"}),
        )
        with patch("chitty_connect.servers.tools_api.audit") as mock_audit:
            response = client.post(
                "/mcp/tools/call",
                json={"name": "chitty_case_get", "arguments": {"case_id": "C-1"}},
                headers={"Authorization": f"Bearer {api_key}"},
            )

        assert response.status_code == 200
        assert json.loads(response.json()["content"][0]["text"]) == {"case_id": "C-1"}
        assert upstream.requests[0].headers["Authorization"] == f"Bearer {api_key}"
        action = mock_audit.call_args.args[0]
        assert action == AuditAction.TOOL_EXECUTED
        assert mock_audit.call_args.kwargs["tool_name"] == "chitty_case_get"
        assert mock_audit.call_args.kwargs["auth_method"] == "api_key"

    def test_upstream_status_is_propagated(self, client, upstream, api_key):
        upstream.add(
            "GET",
            "https://connect.chitty.cc/api/services/status",
            httpx.Response(503, text="maintenance"),
        )
        response = client.post(
            "/mcp/tools/call",
            json={"name": "chitty_services_status"},
            headers={"X-ChittyOS-API-Key": api_key},
        )
        assert response.status_code == 503
        assert response.json()["content"][0]["text"] == "Services error (503): maintenance"

    def test_read_only_key_cannot_call_write_tool(self, client, key_store):
        read_key, _ = key_store.create("reader", scopes=["mcp:read"])
        with patch("chitty_connect.servers.tools_api.audit") as mock_audit:
            response = client.post(
                "/mcp/tools/call",
                json={"name": "chitty_case_create", "arguments": {"title": "x"}},
                headers={"X-ChittyOS-API-Key": read_key},
            )

        assert response.status_code == 403
        assert response.json()["content"][0]["text"] == (
            "Permission denied: chitty_case_create requires the mcp:write scope"
        )
        assert mock_audit.call_args.args[0] == AuditAction.TOOL_DENIED

    def test_tool_rate_limit(self, make_client, api_key):
        client = make_client(rate_limiter=RateLimiter(tool_limit=1))
        headers = {"X-ChittyOS-API-Key": api_key}
        body = {"name": "chitty_bogus"}

        assert client.post("/mcp/tools/call", json=body, headers=headers).status_code == 400
        response = client.post("/mcp/tools/call", json=body, headers=headers)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["content"][0]["text"].startswith(
            "Rate limit exceeded for tool 'chitty_bogus'"
        )

    def test_dispatch_exception(self, client, api_key):
        with patch(
            "chitty_connect.mcp.dispatcher.ToolDispatcher.dispatch",
            side_effect=RuntimeError("dispatcher exploded"),
        ):
            response = client.post(
                "/mcp/tools/call",
                json={"name": "chitty_ledger_stats"},
                headers={"X-ChittyOS-API-Key": api_key},
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Tool call failed", "message": "dispatcher exploded"}

    def test_tool_calls_are_counted(self, make_client, upstream, key_store, api_key):
        metrics = MetricsCollector()
        client = make_client(metrics=metrics)
        upstream.add(
            "GET",
            "https://connect.chitty.cc/api/chittycases/C-1",
            httpx.Response(200, json={"case_id": "C-1"}),
        )
        read_key, _ = key_store.create("reader", scopes=["mcp:read"])

        client.post(
            "/mcp/tools/call",
            json={"name": "chitty_case_get", "arguments": {"case_id": "C-1"}},
            headers={"X-ChittyOS-API-Key": api_key},
        )
        client.post(
            "/mcp/tools/call",
            json={"name": "chitty_case_create", "arguments": {"title": "x"}},
            headers={"X-ChittyOS-API-Key": read_key},
        )
        client.post(
            "/mcp/tools/call",
            json={"name": "chitty_bogus"},
            headers={"X-ChittyOS-API-Key": api_key},
        )

        def count(tool_name, status):
            return metrics.registry.get_sample_value(
                "chittyconnect_tool_calls_total", {"tool_name": tool_name, "status": status}
            )

        assert count("chitty_case_get", "success") == 1.0
        assert count("chitty_case_create", "denied") == 1.0
        assert count("unknown", "error") == 1.0
        assert (
            metrics.registry.get_sample_value(
                "chittyconnect_tool_call_duration_seconds_count",
                {"tool_name": "chitty_case_get"},
            )
            == 1.0
        )
        assert (
            metrics.registry.get_sample_value(
                "chittyconnect_user_activity_total", {"auth_method": "api_key"}
            )
            == 3.0
        )


class TestResourceEndpoints:
    """Tests for /mcp/resources/*."""

    def test_list(self, client, api_key):
        response = client.get("/mcp/resources/list", headers={"X-ChittyOS-API-Key": api_key})
        assert response.status_code == 200
        assert len(response.json()["resources"]) == 3

    def test_read_requires_uri(self, client, api_key):
        response = client.get("/mcp/resources/read", headers={"X-ChittyOS-API-Key": api_key})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameter: uri"}

    def test_read(self, client, upstream, api_key):
        upstream.add(
            "GET",
            "https://connect.chitty.cc/api/services/status",
            httpx.Response(200, json={"healthy": 12}),
        )
        response = client.get(
            "/mcp/resources/read",
            params={"uri": "chitty://ecosystem/status"},
            headers={"X-ChittyOS-API-Key": api_key},
        )
        assert response.status_code == 200
        contents = response.json()["contents"]
        assert json.loads(contents[0]["text"]) == {"healthy": 12}

    def test_read_unknown(self, client, api_key):
        response = client.get(
            "/mcp/resources/read",
            params={"uri": "chitty://nothing"},
            headers={"X-ChittyOS-API-Key": api_key},
        )
        assert response.status_code == 404
        assert response.json()["contents"][0]["mimeType"] == "text/plain"

    def test_read_transport_failure(self, client, api_key):
        with patch(
            "chitty_connect.mcp.resources.fetch", side_effect=httpx.ConnectError("refused")
        ):
            response = client.get(
                "/mcp/resources/read",
                params={"uri": "chitty://credentials/audit"},
                headers={"X-ChittyOS-API-Key": api_key},
            )
        assert response.status_code == 500
        assert response.json() == {"error": "Error reading resource: refused"}
