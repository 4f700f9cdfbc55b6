"""Internal REST surface for tools and resources.

``/mcp/tools/*`` and ``/mcp/resources/*`` are served to REST clients directly
and are also what the JSON-RPC router delegates to. ``call_internal`` runs one
of these endpoints in-process with a request derived from the caller's.
"""

import logging
import re
import time
from collections.abc import Awaitable, Callable
from urllib.parse import urlencode

from starlette.datastructures import URL
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from chitty_connect.mcp.resources import MCP_RESOURCES, read_resource
from chitty_connect.mcp.tools import READ_ONLY_TOOLS, ToolName, list_tools
from chitty_connect.mcp.upstream import ToolResult, error_result
from chitty_connect.servers.context import (
    Caller,
    GatewayContext,
    client_ip,
    get_caller,
    get_gateway,
)
from chitty_connect.utils.audit import AuditAction, AuditResult, audit
from chitty_connect.utils.oauth_clients import SCOPE_READ, SCOPE_WRITE, scope_allows

logger = logging.getLogger("chitty-connect.server.tools")

Endpoint = Callable[[Request], Awaitable[Response]]

EMBEDDED_STATUS_PATTERN = re.compile(r"\((\d{3})\)(?::|$)")

_AUTH_FAILURE_PREFIXES = ("Authentication required", "Missing API key", "Invalid API key")


def result_text(result: ToolResult) -> str:
    """Text of the first content item of a tool result."""
    content = result.get("content") or []
    if content and isinstance(content[0], dict):
        return str(content[0].get("text", ""))
    return ""


def derive_tool_error_status(result: ToolResult) -> int:
    """HTTP status for an ``isError`` tool result, derived from its message."""
    text = result_text(result)
    if text.startswith("Unknown tool"):
        return 400
    if text.startswith("Permission denied"):
        return 403
    if text.startswith(_AUTH_FAILURE_PREFIXES):
        return 401
    if text.startswith("Rate limit exceeded"):
        return 429

    match = EMBEDDED_STATUS_PATTERN.search(text)
    if match and 400 <= int(match.group(1)) <= 599:
        return int(match.group(1))
    return 500


def resolve_internal_base_url(url: URL, default: str) -> str:
    """Base URL of the gateway's own REST API for a request URL.

    The OAuth host (``mcp.``) serves the same API under ``connect.``.
    """
    host = url.netloc
    if not host:
        return default.rstrip("/")
    if host.startswith("mcp."):
        host = "connect." + host[len("mcp."):]
    return f"{url.scheme}://{host}"


def bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def call_internal(
    endpoint: Endpoint,
    request: Request,
    *,
    method: str = "GET",
    path: str,
    params: dict[str, str] | None = None,
    body: bytes = b"",
) -> Response:
    """Run ``endpoint`` with an internal request derived from ``request``.

    Host, Authorization header, client address, app and request state carry
    over, so the endpoint sees the same caller.
    """
    headers = [(b"content-type", b"application/json")]
    for name in (b"host", b"authorization", b"x-forwarded-for"):
        value = request.headers.get(name.decode())
        if value is not None:
            headers.append((name, value.encode("latin-1")))

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": request.url.scheme,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": urlencode(params or {}).encode(),
        "headers": headers,
        "client": request.scope.get("client"),
        "server": request.scope.get("server"),
        "app": request.scope.get("app"),
        "state": dict(request.scope.get("state") or {}),
    }
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return await endpoint(Request(scope, receive))


async def tools_list(request: Request) -> JSONResponse:
    """GET /mcp/tools/list"""
    return JSONResponse({"tools": list_tools()})


def _tool_access_denial(request: Request, name: str) -> ToolResult | None:
    tool = ToolName.lookup(name)
    caller = get_caller(request)
    if tool is None or caller is None:
        return None
    read_only = tool in READ_ONLY_TOOLS
    if scope_allows(caller.scopes, read_only):
        return None
    required = SCOPE_READ if read_only else SCOPE_WRITE
    return error_result(f"Permission denied: {name} requires the {required} scope")


def _track_tool(
    gateway: GatewayContext,
    name: object,
    status: str,
    duration: float | None = None,
    caller: Caller | None = None,
) -> None:
    if gateway.metrics is None:
        return
    tool = ToolName.lookup(name)
    gateway.metrics.track_tool_call(
        tool.value if tool else "unknown",
        status,
        duration_seconds=duration,
        auth_method=caller.auth_method if caller else None,
    )


async def tools_call(request: Request) -> JSONResponse:
    """POST /mcp/tools/call

    Request body:
        {"name": "chitty_case_get", "arguments": {...}, "context": {...}}

    Returns:
        The tool result, with an HTTP status derived from its error message
    """
    gateway = get_gateway(request)
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON in request body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    name = body.get("name")
    caller = get_caller(request)
    user_ip = client_ip(request)
    audit_fields = {
        "user_id": caller.user_id if caller else None,
        "client_id": caller.client_id if caller else None,
        "auth_method": caller.auth_method if caller else None,
        "user_ip": user_ip,
        "tool_name": str(name),
    }
    if body.get("context"):
        logger.debug(f"tools/call {name} context: {body['context']}")

    try:
        denial = _tool_access_denial(request, name)
        if denial is not None:
            audit(
                AuditAction.TOOL_DENIED,
                AuditResult.DENIED,
                error_message=result_text(denial),
                **audit_fields,
            )
            _track_tool(gateway, name, "denied", caller=caller)
            return JSONResponse(denial, status_code=403)

        limiter = gateway.rate_limiter
        if limiter is not None and isinstance(name, str):
            subject = (caller.client_id or caller.user_id) if caller else None
            allowed, message, retry_after = limiter.check_tool(
                subject or user_ip or "anonymous", name
            )
            if not allowed:
                audit(
                    AuditAction.TOOL_DENIED,
                    AuditResult.DENIED,
                    error_message=message,
                    **audit_fields,
                )
                _track_tool(gateway, name, "denied", caller=caller)
                return JSONResponse(
                    error_result(message or "Rate limit exceeded"),
                    status_code=429,
                    headers={"Retry-After": str(retry_after)} if retry_after else None,
                )

        started = time.monotonic()
        result = await gateway.dispatcher.dispatch(
            name,
            body.get("arguments"),
            gateway.env,
            base_url=resolve_internal_base_url(request.url, gateway.config.default_base_url),
            auth_token=bearer_token(request),
        )
        duration = time.monotonic() - started
        duration_ms = int(duration * 1000)
    except Exception as e:
        logger.error(f"Tool call {name} failed: {e}", exc_info=True)
        _track_tool(gateway, name, "error", caller=caller)
        audit(AuditAction.TOOL_ERROR, AuditResult.ERROR, error_message=str(e), **audit_fields)
        return JSONResponse({"error": "Tool call failed", "message": str(e)}, status_code=500)

    if result.get("isError"):
        status_code = derive_tool_error_status(result)
        audit(
            AuditAction.TOOL_ERROR,
            AuditResult.ERROR,
            duration_ms=duration_ms,
            error_message=result_text(result)[:200],
            metadata={"status_code": status_code},
            **audit_fields,
        )
    else:
        status_code = 200
        audit(AuditAction.TOOL_EXECUTED, duration_ms=duration_ms, **audit_fields)
    _track_tool(
        gateway, name, "error" if result.get("isError") else "success", duration, caller
    )
    return JSONResponse(result, status_code=status_code)


async def resources_list(request: Request) -> JSONResponse:
    """GET /mcp/resources/list"""
    return JSONResponse({"resources": MCP_RESOURCES})


async def resources_read(request: Request) -> JSONResponse:
    """GET /mcp/resources/read?uri=..."""
    uri = request.query_params.get("uri")
    if not uri:
        return JSONResponse({"error": "Missing required parameter: uri"}, status_code=400)

    gateway = get_gateway(request)
    try:
        read = await read_resource(
            gateway.http_client,
            uri,
            base_url=resolve_internal_base_url(request.url, gateway.config.default_base_url),
            authorization=request.headers.get("authorization"),
        )
    except Exception as e:
        logger.error(f"Error reading resource {uri}: {e}", exc_info=True)
        return JSONResponse({"error": f"Error reading resource: {e}"}, status_code=500)
    return JSONResponse(read.to_dict(), status_code=read.status_code)
