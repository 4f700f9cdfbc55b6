"""MCP Streamable HTTP endpoint.

POST carries JSON-RPC messages, GET opens the SSE push channel and DELETE
terminates the session. Every response carries the ``Mcp-Session-Id`` header.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from chitty_connect.config import SESSION_HEADER
from chitty_connect.servers.context import client_ip, get_caller, get_gateway
from chitty_connect.utils.audit import AuditAction, audit
from chitty_connect.utils.sessions import SSEConnection, SSEConnectionRegistry

logger = logging.getLogger("chitty-connect.server.transport")

SSE_CONNECTED = ": connected\n\n"
SSE_HEARTBEAT = ": heartbeat\n\n"


async def sse_stream(
    registry: SSEConnectionRegistry, connection: SSEConnection, heartbeat_interval: float
) -> AsyncIterator[str]:
    """Body of the push channel.

    Ends when the connection is closed; the registry entry is removed on the
    way out, including when the client disconnects.
    """
    try:
        yield SSE_CONNECTED
        while True:
            try:
                message = await asyncio.wait_for(
                    connection.queue.get(), timeout=heartbeat_interval
                )
            except asyncio.TimeoutError:
                yield SSE_HEARTBEAT
                continue
            if message is None:
                break
            yield f"event: message\ndata: {json.dumps(message)}\n\n"
    finally:
        registry.unregister(connection.session_id, connection)


async def mcp_endpoint(request: Request) -> Response:
    """Handle POST, GET and DELETE on the MCP endpoint."""
    gateway = get_gateway(request)
    session = gateway.sessions.resolve(request.headers.get(SESSION_HEADER))
    headers = {SESSION_HEADER: session.id}

    if session.is_new:
        caller = get_caller(request)
        audit(
            AuditAction.SESSION_CREATED,
            session_id=session.id,
            user_id=caller.user_id if caller else None,
            auth_method=caller.auth_method if caller else None,
            user_ip=client_ip(request),
        )

    if request.method == "POST":
        body = await request.body()
        reply = await gateway.router.handle_body(body, request)
        if reply.payload is None:
            return Response(status_code=204, headers=headers)
        return JSONResponse(reply.payload, status_code=reply.status_code, headers=headers)

    if request.method == "GET":
        if "text/event-stream" not in request.headers.get("accept", ""):
            return PlainTextResponse(
                "Not Acceptable: requires Accept: text/event-stream",
                status_code=406,
                headers=headers,
            )
        connection = gateway.connections.register(session.id)
        logger.debug(f"SSE connection opened for session {session.id}")
        return StreamingResponse(
            sse_stream(gateway.connections, connection, gateway.config.heartbeat_interval),
            media_type="text/event-stream",
            headers={**headers, "Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    if request.method == "DELETE":
        gateway.connections.close(session.id)
        if gateway.sessions.terminate(session.id):
            audit(AuditAction.SESSION_TERMINATED, session_id=session.id)
        return Response(status_code=204, headers=headers)

    return PlainTextResponse(
        "Method Not Allowed",
        status_code=405,
        headers={**headers, "Allow": "GET, POST, DELETE"},
    )
