"""Per-application gateway components shared by the HTTP handlers."""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from starlette.requests import Request

from chitty_connect.config import GatewayConfig
from chitty_connect.mcp.dispatcher import ToolDispatcher
from chitty_connect.utils.api_keys import ApiKeyStore
from chitty_connect.utils.metrics import MetricsCollector
from chitty_connect.utils.oauth_clients import ClientRegistry, IdentityResolver, TokenService
from chitty_connect.utils.proof import AsyncProofQueue
from chitty_connect.utils.rate_limit import RateLimiter
from chitty_connect.utils.sessions import SessionRegistry, SSEConnectionRegistry
from chitty_connect.utils.storage import LocalFileStore

if TYPE_CHECKING:
    from chitty_connect.servers.jsonrpc import JsonRpcRouter


@dataclass(frozen=True)
class Caller:
    """The authenticated caller of an MCP request."""

    auth_method: str  # "api_key" or "oauth"
    user_id: str | None
    client_id: str | None
    scopes: tuple[str, ...]


@dataclass
class GatewayContext:
    """Everything a request handler needs; stored on ``app.state.gateway``."""

    config: GatewayConfig
    env: Mapping[str, str]
    http_client: httpx.AsyncClient
    dispatcher: ToolDispatcher
    router: "JsonRpcRouter"
    sessions: SessionRegistry
    connections: SSEConnectionRegistry
    clients: ClientRegistry
    tokens: TokenService
    identity: IdentityResolver
    api_keys: ApiKeyStore
    file_store: LocalFileStore | None = None
    proof_queue: AsyncProofQueue | None = None
    rate_limiter: RateLimiter | None = None
    metrics: MetricsCollector | None = None


def get_gateway(request: Request) -> GatewayContext:
    return request.app.state.gateway


def get_caller(request: Request) -> Caller | None:
    return getattr(request.state, "caller", None)


def client_ip(request: Request) -> str | None:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
