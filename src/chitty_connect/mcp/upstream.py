"""Upstream HTTP responses and their conversion into tool results.

Every downstream call made by the dispatcher goes through ``fetch`` and comes
back as an ``UpstreamResponse``: either a parsed JSON body or the raw text the
service sent. ``to_tool_result`` is the one place those two shapes become the
``{"content": [...], "isError": true?}`` envelope returned to MCP clients.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger("chitty-connect.mcp.upstream")

ToolResult = dict[str, Any]

RAW_TEXT_LIMIT = 200
ERROR_TEXT_LIMIT = 300


@dataclass(frozen=True)
class UpstreamResponse:
    """Status and body of a downstream response.

    ``body`` holds the decoded JSON when ``is_json`` is true; ``text`` always
    holds the raw response text.
    """

    status_code: int
    text: str
    body: Any = None
    is_json: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "UpstreamResponse":
        text = response.text
        try:
            return cls(response.status_code, text, json.loads(text), True)
        except ValueError:
            return cls(response.status_code, text)


async def fetch(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    params: dict[str, Any] | None = None,
) -> UpstreamResponse:
    """Issue one downstream request.

    Transport failures (connection refused, timeouts) propagate as
    ``httpx.HTTPError``; every HTTP status is returned as a response.
    """
    response = await client.request(
        method,
        url,
        headers=headers,
        json=json_body,
        params=params or None,
    )
    logger.debug(f"{method} {url} -> {response.status_code}")
    return UpstreamResponse.from_httpx(response)


def text_result(text: str, is_error: bool = False) -> ToolResult:
    result: ToolResult = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def json_result(payload: Any, is_error: bool = False) -> ToolResult:
    return text_result(json.dumps(payload, indent=2, ensure_ascii=False), is_error)


def error_result(message: str) -> ToolResult:
    return text_result(message, is_error=True)


def tolerant_body(response: UpstreamResponse, label: str) -> Any:
    """Return the parsed body, or an ``{"error": ...}`` object wrapping raw text."""
    if response.is_json:
        return response.body
    return {
        "error": f"{label} returned ({response.status_code}): "
        f"{response.text[:RAW_TEXT_LIMIT]}"
    }


def to_tool_result(
    response: UpstreamResponse, label: str, *, tolerant: bool = False
) -> ToolResult:
    """Normalize a downstream response into the tool result envelope.

    Args:
        response: The downstream response
        label: Service name used in error messages (e.g. "Ledger", "ChittyID")
        tolerant: Keep non-JSON bodies as an ``{"error": ...}`` payload instead
            of failing the call. Non-ok statuses still set ``isError``.

    Returns:
        Tool result envelope
    """
    if tolerant:
        return json_result(tolerant_body(response, label), is_error=not response.ok)

    if response.ok and response.is_json:
        return json_result(response.body)

    return error_result(
        f"{label} error ({response.status_code}): {response.text[:ERROR_TEXT_LIMIT]}"
    )
