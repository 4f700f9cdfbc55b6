"""ChittyConnect gateway application."""

import json
import logging
import os
import uuid
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response
from starlette.routing import Route

from chitty_connect.config import SESSION_HEADER, GatewayConfig
from chitty_connect.mcp.dispatcher import ToolDispatcher
from chitty_connect.mcp.tools import MCP_TOOLS
from chitty_connect.servers.context import Caller, GatewayContext, get_gateway
from chitty_connect.servers.jsonrpc import JsonRpcRouter
from chitty_connect.servers.oauth import (
    authorize,
    oauth_metadata,
    preflight_response,
    register_client,
    token,
)
from chitty_connect.servers.tools_api import (
    resources_list,
    resources_read,
    tools_call,
    tools_list,
)
from chitty_connect.servers.transport import mcp_endpoint
from chitty_connect.utils.api_keys import ApiKeyStore, key_expired
from chitty_connect.utils.audit import AuditAction, AuditResult, audit
from chitty_connect.utils.credentials import ServiceCredentials
from chitty_connect.utils.logging import mask_sensitive
from chitty_connect.utils.metrics import MetricsCollector, get_metrics
from chitty_connect.utils.oauth_clients import ClientRegistry, IdentityResolver, TokenService
from chitty_connect.utils.proof import AsyncProofQueue, ProofClient, ProofJobConsumer
from chitty_connect.utils.rate_limit import RateLimiter, get_rate_limiter
from chitty_connect.utils.sessions import SessionRegistry, SSEConnectionRegistry
from chitty_connect.utils.storage import LocalFileStore
from chitty_connect.utils.trust import PermissionChecker, TrustResolver

logger = logging.getLogger("chitty-connect.server.main")

API_KEY_HEADER = "x-chittyos-api-key"
PUBLIC_PATH_SUFFIXES = ("/manifest", "/health")


def build_gateway(
    config: GatewayConfig,
    env: Mapping[str, str] | None = None,
    http_client: httpx.AsyncClient | None = None,
    rate_limiter: RateLimiter | None = None,
    metrics: MetricsCollector | None = None,
) -> GatewayContext:
    """Wire the gateway components for ``config``.

    Args:
        config: Gateway configuration
        env: Service environment (credentials, search settings); defaults to
            the process environment
        http_client: Client for downstream calls; one is created when omitted
        rate_limiter: Rate limiter; None disables rate limiting
        metrics: Metrics collector; the global collector when omitted

    Returns:
        GatewayContext ready to be placed on ``app.state.gateway``
    """
    env = dict(os.environ) if env is None else env
    http_client = http_client or httpx.AsyncClient(timeout=config.http_timeout)
    endpoints = config.endpoints

    trust_resolver = TrustResolver(
        http_client, env.get("CHITTY_TRUST_TOKEN"), base_url=endpoints.trust_url
    )
    proof_client = ProofClient.from_env(http_client, env, endpoints.proof_url)
    proof_queue = None
    if proof_client is not None:
        proof_queue = AsyncProofQueue(
            ProofJobConsumer(proof_client, http_client, endpoints.ledger_url),
            max_attempts=config.proof_queue_max_attempts,
        )
    file_store = LocalFileStore(config.exports_dir) if config.exports_dir else None

    dispatcher = ToolDispatcher(
        http_client,
        PermissionChecker(trust_resolver),
        credentials=ServiceCredentials(),
        proof_client=proof_client,
        proof_queue=proof_queue,
        file_store=file_store,
        endpoints=endpoints,
    )
    return GatewayContext(
        config=config,
        env=env,
        http_client=http_client,
        dispatcher=dispatcher,
        router=JsonRpcRouter(config.server_name, config.server_version, config.protocol_version),
        sessions=SessionRegistry(config.session_cache_size),
        connections=SSEConnectionRegistry(),
        clients=ClientRegistry(config.oauth_clients_path),
        tokens=TokenService(
            config.oauth_signing_secret,
            access_token_ttl=config.access_token_ttl,
            refresh_token_ttl=config.refresh_token_ttl,
            issuer=config.server_name,
        ),
        identity=IdentityResolver(
            config.identity_provider_url,
            config.fallback_user_id,
            service_token=env.get("CHITTY_AUTH_TOKEN"),
            timeout=config.http_timeout,
        ),
        api_keys=ApiKeyStore(config.api_keys_path),
        file_store=file_store,
        proof_queue=proof_queue,
        rate_limiter=rate_limiter,
        metrics=metrics or get_metrics(),
    )


def _with_session_header(send: Callable, session_id: str) -> Callable:
    """Wrap ``send`` so the response start carries ``Mcp-Session-Id``."""
    header = (SESSION_HEADER.lower().encode(), session_id.encode("latin-1"))

    async def send_with_session(message: dict) -> None:
        if message.get("type") == "http.response.start":
            message = {**message, "headers": [*message.get("headers", []), header]}
        await send(message)

    return send_with_session


class GatewayAuthMiddleware:
    """ASGI middleware routing MCP requests to OAuth or API-key authentication.

    On the OAuth host the MCP endpoint requires a bearer access token issued
    by the gateway. Everywhere else ``/mcp`` and ``/mcp/*`` require an API key,
    except paths ending in ``/manifest`` or ``/health``.
    """

    def __init__(self, app: Any, gateway: GatewayContext) -> None:
        self.app = app
        self.gateway = gateway

    async def __call__(self, scope: dict, receive: Callable, send: Callable) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        metrics = self.gateway.metrics
        metrics_context = None
        if metrics:
            metrics_context = metrics.start_request_tracking(
                scope.get("method", ""), scope.get("path", "")
            )
        response_status = 500

        async def tracking_send(message: dict) -> None:
            nonlocal response_status
            if message.get("type") == "http.response.start":
                response_status = message.get("status", 200)
            await send(message)

        try:
            await self._handle(scope, receive, tracking_send)
        finally:
            if metrics and metrics_context:
                metrics.end_request_tracking(metrics_context, response_status)

    async def _handle(self, scope: dict, receive: Callable, send: Callable) -> None:
        # ASGI middleware copies the scope before modifying it
        scope_copy = scope.copy()
        scope_copy["state"] = dict(scope.get("state") or {})
        scope_copy["state"]["request_id"] = str(uuid.uuid4())

        headers = {
            key.decode("latin-1").lower(): value.decode("latin-1")
            for key, value in scope.get("headers", [])
        }
        config = self.gateway.config
        path = scope.get("path", "").rstrip("/") or "/"
        host = headers.get("host", "").split(":")[0].lower()
        user_ip = self._client_ip(scope, headers)

        if scope.get("method") == "OPTIONS" or not self._is_mcp_path(path):
            await self.app(scope_copy, receive, send)
            return

        error_send = send
        if path == config.mcp_path:
            # rejected MCP endpoint requests still carry the session header
            error_send = _with_session_header(
                send, headers.get(SESSION_HEADER.lower()) or str(uuid.uuid4())
            )

        if host == config.oauth_host and path == config.mcp_path:
            caller = await self._authenticate_oauth(
                error_send, headers, user_ip, scope_copy["state"]
            )
        elif path.endswith(PUBLIC_PATH_SUFFIXES):
            caller = None
        else:
            caller = await self._authenticate_api_key(error_send, headers, user_ip)

        if caller is False:
            return
        if caller is not None:
            scope_copy["state"]["caller"] = caller

        async def safe_send(message: dict) -> None:
            try:
                await send(message)
            except (ConnectionResetError, BrokenPipeError) as e:
                logger.debug(f"Client disconnected during response: {type(e).__name__}: {e}")

        await self.app(scope_copy, receive, safe_send)

    def _is_mcp_path(self, path: str) -> bool:
        mcp_path = self.gateway.config.mcp_path
        return path in (mcp_path, "/mcp") or path.startswith(("/mcp/", mcp_path + "/"))

    @staticmethod
    def _client_ip(scope: dict, headers: dict[str, str]) -> str | None:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        client = scope.get("client")
        return client[0] if client else None

    async def _authenticate_oauth(
        self,
        send: Callable,
        headers: dict[str, str],
        user_ip: str | None,
        state: dict[str, Any],
    ) -> Caller | bool:
        """Verify the bearer access token. Returns False once an error was sent.

        The verified grant is stored as ``oauth_grant`` in the request state.
        """
        scheme, _, access_token = headers.get("authorization", "").partition(" ")
        grant = None
        if scheme.lower() == "bearer" and access_token.strip():
            grant = self.gateway.tokens.verify_access_token(access_token.strip())

        if grant is None:
            audit(
                AuditAction.AUTHENTICATION_FAILURE,
                AuditResult.FAILURE,
                auth_method="oauth",
                user_ip=user_ip,
                error_message="Missing or invalid access token",
            )
            await self._send_error_response(
                send,
                401,
                "invalid_token",
                "A valid OAuth access token is required",
                extra_headers=[(b"www-authenticate", b'Bearer realm="chittyconnect"')],
            )
            return False

        limiter = self.gateway.rate_limiter
        if limiter is not None:
            allowed, message, retry_after = limiter.check_rate_limit(
                client_id=grant.client_id, user_ip=user_ip
            )
            if not allowed:
                await self._send_rate_limited(send, message, retry_after)
                return False

        state["oauth_grant"] = grant
        audit(
            AuditAction.AUTHENTICATION_SUCCESS,
            user_id=grant.user_id,
            client_id=grant.client_id,
            auth_method="oauth",
            user_ip=user_ip,
        )
        return Caller(
            auth_method="oauth",
            user_id=grant.user_id,
            client_id=grant.client_id,
            scopes=grant.scopes,
        )

    async def _authenticate_api_key(
        self, send: Callable, headers: dict[str, str], user_ip: str | None
    ) -> Caller | bool:
        """Check the API key. Returns False once an error was sent."""
        api_key = headers.get(API_KEY_HEADER)
        if not api_key:
            scheme, _, value = headers.get("authorization", "").partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                api_key = value.strip()
        if not api_key:
            await self._send_error_response(
                send, 401, "Authentication required", "Provide X-ChittyOS-API-Key header"
            )
            return False

        try:
            record = self.gateway.api_keys.get(api_key)
        except (OSError, ValueError) as e:
            logger.error(f"API key lookup failed: {e}", exc_info=True)
            await self._send_error_response(send, 500, "Authentication error")
            return False

        denial = None
        if record is None:
            denial = "Invalid API key"
        elif record.get("status") != "active":
            denial = "API key inactive"
        elif key_expired(record):
            denial = "API key expired"
        if denial:
            audit(
                AuditAction.AUTHENTICATION_FAILURE,
                AuditResult.DENIED,
                client_id=mask_sensitive(api_key),
                auth_method="api_key",
                user_ip=user_ip,
                error_message=denial,
            )
            await self._send_error_response(send, 403, denial)
            return False

        limiter = self.gateway.rate_limiter
        if limiter is not None:
            allowed, message, retry_after = limiter.check_api_key(
                api_key, record.get("rateLimit")
            )
            if not allowed:
                await self._send_rate_limited(send, message, retry_after)
                return False

        return Caller(
            auth_method="api_key",
            user_id=record.get("userId") or record.get("name"),
            client_id=mask_sensitive(api_key),
            scopes=tuple(record.get("scopes") or ()),
        )

    async def _send_rate_limited(
        self, send: Callable, message: str | None, retry_after: int | None
    ) -> None:
        await self._send_error_response(
            send,
            429,
            "Rate limit exceeded",
            message,
            extra_headers=[(b"retry-after", str(retry_after or 60).encode())],
        )

    async def _send_error_response(
        self,
        send: Callable,
        status_code: int,
        error: str,
        message: str | None = None,
        extra_headers: list[tuple[bytes, bytes]] | None = None,
    ) -> None:
        """Send an HTTP error response following ASGI protocol."""
        payload = {"error": error}
        if message:
            payload["message"] = message
        response_body = json.dumps(payload).encode()
        try:
            await send(
                {
                    "type": "http.response.start",
                    "status": status_code,
                    "headers": [
                        (b"content-type", b"application/json"),
                        (b"content-length", str(len(response_body)).encode()),
                        *(extra_headers or []),
                    ],
                }
            )
            await send({"type": "http.response.body", "body": response_body})
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug(
                f"Client disconnected during error response: {type(e).__name__}: {e}"
            )


async def health_check(request: Request) -> JSONResponse:
    config = get_gateway(request).config
    return JSONResponse(
        {"status": "ok", "service": config.server_name, "version": config.server_version}
    )


async def ready_check(request: Request) -> JSONResponse:
    """Readiness check for Kubernetes probes."""
    return JSONResponse({"status": "ready", "server": get_gateway(request).config.server_name})


async def mcp_manifest(request: Request) -> JSONResponse:
    """Public description of the MCP endpoint."""
    config = get_gateway(request).config
    return JSONResponse(
        {
            "name": config.server_name,
            "version": config.server_version,
            "protocolVersion": config.protocol_version,
            "transport": "streamable-http",
            "endpoint": config.mcp_path,
            "tools": len(MCP_TOOLS),
            "authentication": {
                "oauth": f"https://{config.oauth_host}/.well-known/oauth-authorization-server",
                "apiKeyHeader": "X-ChittyOS-API-Key",
            },
        }
    )


async def metrics_endpoint(request: Request) -> Response:
    """Prometheus metrics endpoint for scraping."""
    metrics = get_gateway(request).metrics
    if not metrics or not metrics.is_enabled:
        return Response(
            "# Metrics collection not enabled\n", media_type="text/plain", status_code=503
        )
    content, content_type = metrics.generate_metrics()
    return Response(content, media_type=content_type)


async def download_export(request: Request) -> Response:
    """GET /api/v1/exports/{path} serves a stored export file."""
    file_store = get_gateway(request).file_store
    path = file_store.locate(f"exports/{request.path_params['path']}") if file_store else None
    if path is None:
        return JSONResponse({"error": "Export not found"}, status_code=404)
    return FileResponse(path, media_type="application/pdf", filename=path.name)


def _with_preflight(handler: Callable) -> Callable:
    async def route(request: Request) -> Response:
        if request.method == "OPTIONS":
            return preflight_response()
        return await handler(request)

    route.__name__ = handler.__name__
    route.__doc__ = handler.__doc__
    return route


def create_app(
    config: GatewayConfig | None = None,
    *,
    env: Mapping[str, str] | None = None,
    http_client: httpx.AsyncClient | None = None,
    rate_limiter: RateLimiter | None = None,
    metrics: MetricsCollector | None = None,
) -> Starlette:
    """Create the gateway application.

    Args:
        config: Gateway configuration; read from the environment when omitted
        env: Service environment passed to the tool dispatcher
        http_client: Client for downstream calls (tests inject a mock transport)
        rate_limiter: Rate limiter; the global RATE_LIMIT_* limiter when omitted
        metrics: Metrics collector; the global METRICS_ENABLED collector when omitted

    Returns:
        Starlette application
    """
    config = config or GatewayConfig.from_env()
    if rate_limiter is None:
        rate_limiter = get_rate_limiter()
    elif not rate_limiter.enabled:
        rate_limiter = None
    gateway = build_gateway(
        config,
        env=env,
        http_client=http_client,
        rate_limiter=rate_limiter,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if gateway.proof_queue is not None:
            gateway.proof_queue.start()
        audit(
            AuditAction.SERVER_STARTED,
            metadata={"version": config.server_version, "oauth_host": config.oauth_host},
        )
        logger.info(f"{config.server_name} {config.server_version} started")
        try:
            yield
        finally:
            if gateway.proof_queue is not None:
                await gateway.proof_queue.stop()
            await gateway.http_client.aclose()
            audit(AuditAction.SERVER_STOPPED)
            logger.info(f"{config.server_name} stopped")

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/healthz", health_check, methods=["GET"]),
        Route("/readyz", ready_check, methods=["GET"]),
        Route("/metrics", metrics_endpoint, methods=["GET"]),
        Route(
            config.mcp_path,
            mcp_endpoint,
            methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        ),
        Route("/mcp/manifest", mcp_manifest, methods=["GET"]),
        Route("/mcp/tools/list", tools_list, methods=["GET"]),
        Route("/mcp/tools/call", tools_call, methods=["POST"]),
        Route("/mcp/resources/list", resources_list, methods=["GET"]),
        Route("/mcp/resources/read", resources_read, methods=["GET"]),
        Route("/authorize", _with_preflight(authorize), methods=["GET", "OPTIONS"]),
        Route("/token", _with_preflight(token), methods=["POST", "OPTIONS"]),
        Route("/register", _with_preflight(register_client), methods=["POST", "OPTIONS"]),
        Route(
            "/.well-known/oauth-authorization-server",
            _with_preflight(oauth_metadata),
            methods=["GET", "OPTIONS"],
        ),
        Route("/api/v1/exports/{path:path}", download_export, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.gateway = gateway
    app.add_middleware(GatewayAuthMiddleware, gateway=gateway)
    return app
