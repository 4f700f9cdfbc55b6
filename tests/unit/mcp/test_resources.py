"""Unit tests for MCP resources."""

import json

import httpx
import pytest

from chitty_connect.mcp.resources import MCP_RESOURCES, read_resource


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestResources:
    def test_catalog(self):
        uris = [resource["uri"] for resource in MCP_RESOURCES]
        assert uris == [
            "chitty://ecosystem/status",
            "chitty://memory/session/{id}",
            "chitty://credentials/audit",
        ]

    @pytest.mark.anyio
    async def test_ecosystem_status(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"services": []})

        read = await read_resource(
            client_for(handler),
            "chitty://ecosystem/status",
            base_url="https://connect.example/",
            authorization="Bearer caller",
        )

        assert seen == {
            "url": "https://connect.example/api/services/status",
            "auth": "Bearer caller",
        }
        assert read.status_code == 200
        contents = read.to_dict()["contents"]
        assert len(contents) == 1
        assert contents[0]["uri"] == "chitty://ecosystem/status"
        assert contents[0]["mimeType"] == "application/json"
        assert json.loads(contents[0]["text"]) == {"services": []}

    @pytest.mark.anyio
    async def test_session_memory(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["session_id"] = request.url.params["session_id"]
            return httpx.Response(200, json={"memories": []})

        read = await read_resource(
            client_for(handler),
            "chitty://memory/session/abc-123",
            base_url="https://connect.example",
        )

        assert seen == {"path": "/api/v1/memory/recall", "session_id": "abc-123"}
        assert json.loads(read.text) == {"memories": []}

    @pytest.mark.anyio
    async def test_credential_audit_posts(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"events": []})

        await read_resource(
            client_for(handler), "chitty://credentials/audit", base_url="https://c.example"
        )
        assert seen == {"method": "POST", "path": "/api/credentials/audit"}

    @pytest.mark.anyio
    async def test_unavailable(self):
        read = await read_resource(
            client_for(lambda request: httpx.Response(503, text="down")),
            "chitty://ecosystem/status",
            base_url="https://c.example",
        )
        assert read.status_code == 200
        assert read.mime_type == "text/plain"
        assert read.text == "Ecosystem status unavailable (503)"

    @pytest.mark.anyio
    async def test_unknown_uri(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        for uri in ("chitty://nowhere", "chitty://memory/session/"):
            read = await read_resource(client_for(handler), uri, base_url="https://c.example")
            assert read.status_code == 404
            assert read.mime_type == "text/plain"
            assert read.text == f"Unknown resource: {uri}"
