"""Gateway configuration loaded from environment variables."""

import logging
import os
import secrets
from dataclasses import dataclass, field

from chitty_connect import __version__

logger = logging.getLogger("chitty-connect.config")

PROTOCOL_VERSION = "2025-03-26"
SESSION_HEADER = "Mcp-Session-Id"


@dataclass(frozen=True)
class ServiceEndpoints:
    """Base URLs of the ChittyOS services the dispatcher talks to."""

    ledger_url: str = "https://ledger.chitty.cc"
    contextual_url: str = "https://contextual.chitty.cc"
    chittyid_url: str = "https://id.chitty.cc"
    trust_url: str = "https://trust.chitty.cc"
    proof_url: str = "https://proof.chitty.cc"
    search_api_url: str = "https://api.cloudflare.com/client/v4"
    search_instance: str = "chittyevidence-search"

    @classmethod
    def from_env(cls) -> "ServiceEndpoints":
        defaults = cls()
        return cls(
            ledger_url=os.getenv("CHITTY_LEDGER_URL", defaults.ledger_url).rstrip("/"),
            contextual_url=os.getenv(
                "CHITTY_CONTEXTUAL_URL", defaults.contextual_url
            ).rstrip("/"),
            chittyid_url=os.getenv("CHITTY_ID_URL", defaults.chittyid_url).rstrip("/"),
            trust_url=os.getenv("CHITTY_TRUST_URL", defaults.trust_url).rstrip("/"),
            proof_url=os.getenv("CHITTY_PROOF_URL", defaults.proof_url).rstrip("/"),
            search_api_url=os.getenv(
                "AI_SEARCH_API_URL", defaults.search_api_url
            ).rstrip("/"),
            search_instance=os.getenv("AI_SEARCH_INSTANCE", defaults.search_instance),
        )


@dataclass
class GatewayConfig:
    """Runtime settings for the gateway application."""

    server_name: str = "chittyconnect"
    server_version: str = __version__
    protocol_version: str = PROTOCOL_VERSION
    oauth_host: str = "mcp.chitty.cc"
    mcp_path: str = "/mcp"
    default_base_url: str = "https://connect.chitty.cc"
    heartbeat_interval: float = 30.0
    session_cache_size: int = 10000
    http_timeout: float = 30.0
    identity_provider_url: str | None = None
    fallback_user_id: str | None = None
    oauth_signing_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    access_token_ttl: int = 3600
    refresh_token_ttl: int = 2592000  # 30 days
    oauth_clients_path: str | None = None
    api_keys_path: str | None = None
    exports_dir: str | None = None
    proof_queue_max_attempts: int = 3
    endpoints: ServiceEndpoints = field(default_factory=ServiceEndpoints)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Create the gateway configuration from environment variables.

        Environment variables:
        - MCP_OAUTH_HOST: Hostname whose MCP endpoint is OAuth protected (default: mcp.chitty.cc)
        - MCP_PATH: Path of the MCP endpoint (default: /mcp)
        - CHITTYCONNECT_BASE_URL: Internal base URL used when none can be derived
        - SSE_HEARTBEAT_SECONDS: Heartbeat interval of the push channel (default: 30)
        - SESSION_CACHE_SIZE: Session bookkeeping capacity (default: 10000)
        - HTTP_TIMEOUT_SECONDS: Upstream request timeout (default: 30)
        - CHITTYAUTH_URL: Upstream identity provider used by /authorize (optional)
        - OAUTH_FALLBACK_USER_ID: Identity used when no provider is configured (optional)
        - OAUTH_SIGNING_SECRET: HS256 secret for access tokens (random when unset)
        - OAUTH_ACCESS_TOKEN_TTL / OAUTH_REFRESH_TOKEN_TTL: Token lifetimes in seconds
        - OAUTH_CLIENTS_STORAGE_PATH / API_KEYS_STORAGE_PATH: JSON storage files
        - EXPORTS_DIR: Directory for generated PDF exports (optional)
        - PROOF_QUEUE_MAX_ATTEMPTS: Proof minting attempts per job (default: 3)

        Returns:
            Configured GatewayConfig instance
        """
        signing_secret = os.getenv("OAUTH_SIGNING_SECRET")
        if not signing_secret:
            logger.warning(
                "OAUTH_SIGNING_SECRET is not set; access tokens will not survive a restart"
            )
            signing_secret = secrets.token_urlsafe(32)

        heartbeat = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))
        if heartbeat <= 0:
            raise ValueError("SSE_HEARTBEAT_SECONDS must be positive")

        return cls(
            oauth_host=os.getenv("MCP_OAUTH_HOST", "mcp.chitty.cc").lower(),
            mcp_path="/" + os.getenv("MCP_PATH", "/mcp").strip("/"),
            default_base_url=os.getenv(
                "CHITTYCONNECT_BASE_URL", "https://connect.chitty.cc"
            ).rstrip("/"),
            heartbeat_interval=heartbeat,
            session_cache_size=int(os.getenv("SESSION_CACHE_SIZE", "10000")),
            http_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            identity_provider_url=os.getenv("CHITTYAUTH_URL") or None,
            fallback_user_id=os.getenv("OAUTH_FALLBACK_USER_ID") or None,
            oauth_signing_secret=signing_secret,
            access_token_ttl=int(os.getenv("OAUTH_ACCESS_TOKEN_TTL", "3600")),
            refresh_token_ttl=int(os.getenv("OAUTH_REFRESH_TOKEN_TTL", "2592000")),
            oauth_clients_path=os.getenv("OAUTH_CLIENTS_STORAGE_PATH") or None,
            api_keys_path=os.getenv("API_KEYS_STORAGE_PATH") or None,
            exports_dir=os.getenv("EXPORTS_DIR") or None,
            proof_queue_max_attempts=int(os.getenv("PROOF_QUEUE_MAX_ATTEMPTS", "3")),
            endpoints=ServiceEndpoints.from_env(),
        )
