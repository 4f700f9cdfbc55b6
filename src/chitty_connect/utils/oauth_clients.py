"""OAuth 2.1 client registry, grants and tokens for the MCP endpoint.

Clients register dynamically (RFC 7591) and are stored in a JSON file.
Authorization codes and refresh tokens live in TTL caches; access tokens are
self-contained HS256 JWTs.
"""

import base64
import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jwt
import requests
from cachetools import TTLCache
from starlette.concurrency import run_in_threadpool

from chitty_connect.utils.logging import mask_sensitive

logger = logging.getLogger("chitty-connect.oauth.clients")

SCOPE_READ = "mcp:read"
SCOPE_WRITE = "mcp:write"
SCOPE_ADMIN = "mcp:admin"
SUPPORTED_SCOPES = (SCOPE_READ, SCOPE_WRITE, SCOPE_ADMIN)
DEFAULT_SCOPES = (SCOPE_READ, SCOPE_WRITE)

AUTH_CODE_TTL = 600  # 10 minutes
TOKEN_ALGORITHM = "HS256"
TOKEN_AUDIENCE = "chittyconnect-mcp"


class ClientRegistry:
    """Stores dynamically registered OAuth clients in a JSON file."""

    def __init__(self, storage_path: str | None = None) -> None:
        """Initialize the client registry.

        Args:
            storage_path: Optional path to the storage file. Defaults to
                ~/.chitty-connect/oauth-clients.json
        """
        if storage_path:
            self.storage_path = Path(storage_path)
        else:
            self.storage_path = Path.home() / ".chitty-connect" / "oauth-clients.json"

        self._clients: dict[str, dict[str, Any]] = {}
        self._load_clients()

    def _load_clients(self) -> None:
        if not self.storage_path.exists():
            logger.debug(f"Client registry file does not exist: {self.storage_path}")
            return

        try:
            with open(self.storage_path) as f:
                self._clients = json.load(f).get("clients", {})
            logger.info(f"Loaded {len(self._clients)} clients from registry")
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse client registry file: {e}")
            self._clients = {}
        except OSError as e:
            logger.error(f"Failed to load client registry: {e}")
            self._clients = {}

    def _save_clients(self) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(self.storage_path, "w") as f:
            json.dump({"clients": self._clients}, f, indent=2)
        self.storage_path.chmod(0o600)
        logger.debug(f"Saved {len(self._clients)} clients to registry")

    def register_client(
        self,
        redirect_uris: list[str],
        client_name: str | None = None,
        client_uri: str | None = None,
        scope: str | None = None,
        grant_types: list[str] | None = None,
        response_types: list[str] | None = None,
        token_endpoint_auth_method: str = "client_secret_basic",
    ) -> dict[str, Any]:
        """Register a new OAuth client.

        Public clients (``token_endpoint_auth_method`` "none") get no secret
        and must use PKCE.

        Returns:
            RFC 7591 registration response

        Raises:
            OSError: If the registry cannot be written
        """
        client_id = secrets.token_urlsafe(32)
        is_public = token_endpoint_auth_method == "none"
        client_secret = None if is_public else secrets.token_urlsafe(64)

        client_data: dict[str, Any] = {
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uris": redirect_uris,
            "client_name": client_name,
            "client_uri": client_uri,
            "scope": " ".join(normalize_scopes(scope)) if scope else None,
            "grant_types": grant_types or ["authorization_code", "refresh_token"],
            "response_types": response_types or ["code"],
            "token_endpoint_auth_method": token_endpoint_auth_method,
            "client_id_issued_at": int(time.time()),
        }
        self._clients[client_id] = client_data
        self._save_clients()
        logger.info(f"Registered OAuth client {client_name or client_id}")

        response = {k: v for k, v in client_data.items() if v is not None}
        if client_secret:
            response["client_secret_expires_at"] = 0
        return response

    def get_client(self, client_id: str) -> dict[str, Any] | None:
        return self._clients.get(client_id)

    def is_confidential(self, client_id: str) -> bool:
        client = self.get_client(client_id)
        return bool(client and client.get("client_secret"))

    def validate_client_credentials(self, client_id: str, client_secret: str) -> bool:
        """Check a client secret in constant time."""
        client = self.get_client(client_id)
        if not client or not client.get("client_secret"):
            return False
        return secrets.compare_digest(client["client_secret"], client_secret)

    def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        client = self.get_client(client_id)
        if not client:
            return False
        return redirect_uri in client.get("redirect_uris", [])


def normalize_scopes(requested: str | list[str] | None) -> list[str]:
    """Keep the supported scopes of a request, falling back to the defaults."""
    if isinstance(requested, str):
        requested = requested.split()
    scopes = [s for s in dict.fromkeys(requested or []) if s in SUPPORTED_SCOPES]
    return scopes or list(DEFAULT_SCOPES)


def scope_allows(scopes: tuple[str, ...] | list[str], read_only: bool) -> bool:
    """Whether ``scopes`` permit calling a read-only or a mutating tool."""
    if SCOPE_ADMIN in scopes:
        return True
    return (SCOPE_READ if read_only else SCOPE_WRITE) in scopes


def derive_code_challenge(code_verifier: str, method: str) -> str | None:
    """PKCE code challenge of ``code_verifier``; None for unsupported methods."""
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode()).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")
    if method == "plain":
        return code_verifier
    return None


@dataclass(frozen=True)
class OAuthGrant:
    """An authorization granted to a client on behalf of a user."""

    client_id: str
    user_id: str
    scopes: tuple[str, ...]

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


@dataclass(frozen=True)
class PendingAuthorization:
    """An issued authorization code waiting to be exchanged."""

    grant: OAuthGrant
    redirect_uri: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class TokenService:
    """Issues and verifies authorization codes, access tokens and refresh tokens."""

    def __init__(
        self,
        signing_secret: str,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 2592000,
        issuer: str = "chittyconnect",
    ) -> None:
        self._secret = signing_secret
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.issuer = issuer
        self._codes: TTLCache[str, PendingAuthorization] = TTLCache(
            maxsize=10000, ttl=AUTH_CODE_TTL
        )
        self._refresh_tokens: TTLCache[str, OAuthGrant] = TTLCache(
            maxsize=100000, ttl=refresh_token_ttl
        )

    def create_code(self, pending: PendingAuthorization) -> str:
        code = secrets.token_urlsafe(32)
        self._codes[code] = pending
        return code

    def consume_code(self, code: str) -> PendingAuthorization | None:
        """Return the authorization behind ``code``; a code is usable once."""
        return self._codes.pop(code, None)

    def issue_tokens(self, grant: OAuthGrant) -> dict[str, Any]:
        """Issue an access token and a refresh token for ``grant``.

        Returns:
            RFC 6749 token response
        """
        now = int(time.time())
        access_token = jwt.encode(
            {
                "iss": self.issuer,
                "aud": TOKEN_AUDIENCE,
                "sub": grant.user_id,
                "client_id": grant.client_id,
                "scope": grant.scope,
                "iat": now,
                "exp": now + self.access_token_ttl,
                "jti": secrets.token_hex(8),
            },
            self._secret,
            algorithm=TOKEN_ALGORITHM,
        )
        refresh_token = secrets.token_urlsafe(48)
        self._refresh_tokens[refresh_token] = grant
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.access_token_ttl,
            "refresh_token": refresh_token,
            "scope": grant.scope,
        }

    def refresh(self, refresh_token: str, client_id: str) -> dict[str, Any] | None:
        """Exchange a refresh token for new tokens, rotating the refresh token.

        Returns:
            Token response, or None when the token is unknown, expired or
            belongs to another client
        """
        grant = self._refresh_tokens.get(refresh_token)
        if grant is None or grant.client_id != client_id:
            return None
        del self._refresh_tokens[refresh_token]
        return self.issue_tokens(grant)

    def verify_access_token(self, token: str) -> OAuthGrant | None:
        """Decode an access token.

        Returns:
            The grant it carries, or None if the token is invalid or expired
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                audience=TOKEN_AUDIENCE,
                issuer=self.issuer,
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Access token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug(f"Invalid access token: {e}")
            return None

        return OAuthGrant(
            client_id=claims.get("client_id", ""),
            user_id=claims.get("sub", ""),
            scopes=tuple(claims.get("scope", "").split()),
        )


class IdentityResolver:
    """Resolves the user an authorization request is made for.

    With an identity provider configured, the caller's bearer token is
    verified there (``POST {provider}/api/verify``). Without one, the
    configured fallback user id is used.
    """

    def __init__(
        self,
        provider_url: str | None = None,
        fallback_user_id: str | None = None,
        service_token: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.provider_url = provider_url.rstrip("/") if provider_url else None
        self.fallback_user_id = fallback_user_id
        self.service_token = service_token
        self.timeout = timeout
        if not self.provider_url and not self.fallback_user_id:
            logger.warning(
                "Neither CHITTYAUTH_URL nor OAUTH_FALLBACK_USER_ID is set; "
                "all authorization requests will be denied"
            )

    async def resolve(self, bearer_token: str | None) -> str | None:
        """Return the user id for an authorization request, or None to deny it."""
        if not self.provider_url:
            return self.fallback_user_id
        if not bearer_token:
            logger.info("Authorization request without a ChittyAuth token")
            return None
        return await run_in_threadpool(self._verify, bearer_token)

    def _verify(self, bearer_token: str) -> str | None:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        try:
            response = requests.post(
                f"{self.provider_url}/api/verify",
                json={"token": bearer_token},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Identity verification failed for {mask_sensitive(bearer_token)}: {e}")
            return None
        except ValueError:
            logger.warning("Identity provider returned non-JSON")
            return None

        if not isinstance(data, dict) or data.get("valid") is False:
            return None
        claims = data.get("claims") if isinstance(data.get("claims"), dict) else {}
        user_id = (
            data.get("chitty_id")
            or data.get("user_id")
            or data.get("sub")
            or claims.get("chitty_id")
            or claims.get("sub")
        )
        return str(user_id) if user_id else None
