"""MCP resources served by resources/list and resources/read."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from chitty_connect.mcp.upstream import fetch

logger = logging.getLogger("chitty-connect.mcp.resources")

ECOSYSTEM_STATUS_URI = "chitty://ecosystem/status"
SESSION_MEMORY_PREFIX = "chitty://memory/session/"
CREDENTIAL_AUDIT_URI = "chitty://credentials/audit"

MCP_RESOURCES: list[dict[str, str]] = [
    {
        "uri": ECOSYSTEM_STATUS_URI,
        "name": "Ecosystem Status",
        "description": "Real-time status of all ChittyOS services",
        "mimeType": "application/json",
    },
    {
        "uri": SESSION_MEMORY_PREFIX + "{id}",
        "name": "Session Memory",
        "description": "MemoryCloude session context and history",
        "mimeType": "application/json",
    },
    {
        "uri": CREDENTIAL_AUDIT_URI,
        "name": "Credential Audit Log",
        "description": "Credential access patterns and security posture",
        "mimeType": "application/json",
    },
]


@dataclass
class ResourceRead:
    """Contents returned for a resource URI, with the HTTP status to answer with."""

    uri: str
    text: str
    mime_type: str = "application/json"
    status_code: int = 200

    def to_dict(self) -> dict[str, Any]:
        return {
            "contents": [{"uri": self.uri, "mimeType": self.mime_type, "text": self.text}]
        }


async def read_resource(
    http_client: httpx.AsyncClient,
    uri: str,
    *,
    base_url: str,
    authorization: str | None = None,
) -> ResourceRead:
    """Read one resource through the gateway's internal API.

    Args:
        http_client: Shared async HTTP client
        uri: Resource URI from the resources/read request
        base_url: Internal API base URL
        authorization: Caller's Authorization header, forwarded unchanged

    Returns:
        ResourceRead; unknown URIs yield a 404 text/plain read

    Raises:
        httpx.HTTPError: If the internal API cannot be reached
    """
    headers = {"Authorization": authorization} if authorization else None
    base_url = base_url.rstrip("/")

    if uri == ECOSYSTEM_STATUS_URI:
        response = await fetch(
            http_client, "GET", f"{base_url}/api/services/status", headers=headers
        )
        label = "Ecosystem status"
    elif uri.startswith(SESSION_MEMORY_PREFIX) and len(uri) > len(SESSION_MEMORY_PREFIX):
        response = await fetch(
            http_client,
            "GET",
            f"{base_url}/api/v1/memory/recall",
            headers=headers,
            params={"session_id": uri[len(SESSION_MEMORY_PREFIX):]},
        )
        label = "Session memory"
    elif uri == CREDENTIAL_AUDIT_URI:
        response = await fetch(
            http_client,
            "POST",
            f"{base_url}/api/credentials/audit",
            headers=headers,
            json_body={},
        )
        label = "Credential audit log"
    else:
        return ResourceRead(
            uri=uri, text=f"Unknown resource: {uri}", mime_type="text/plain", status_code=404
        )

    if not response.ok:
        logger.info(f"{label} unavailable for {uri}: {response.status_code}")
        return ResourceRead(
            uri=uri,
            text=f"{label} unavailable ({response.status_code})",
            mime_type="text/plain",
        )
    return ResourceRead(uri=uri, text=response.text)
