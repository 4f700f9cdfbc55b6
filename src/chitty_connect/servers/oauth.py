"""OAuth 2.1 authorization server protecting the MCP endpoint.

Implements Dynamic Client Registration (RFC 7591), the authorization code
flow with PKCE, refresh token rotation and Authorization Server Metadata
(RFC 8414). Authorization is granted immediately for the identity resolved
by ``IdentityResolver``.
"""

import base64
import logging
import secrets
import urllib.parse
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from chitty_connect.servers.context import client_ip, get_gateway
from chitty_connect.servers.tools_api import bearer_token
from chitty_connect.utils.audit import AuditAction, AuditResult, audit
from chitty_connect.utils.oauth_clients import (
    SUPPORTED_SCOPES,
    OAuthGrant,
    PendingAuthorization,
    derive_code_challenge,
    normalize_scopes,
)

logger = logging.getLogger("chitty-connect.server.oauth")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

PKCE_METHODS = ("S256", "plain")
TOKEN_AUTH_METHODS = ("client_secret_basic", "client_secret_post", "none")


def _with_cors(response: Response) -> Response:
    response.headers.update(CORS_HEADERS)
    return response


def preflight_response() -> Response:
    """Empty response to a CORS preflight request."""
    return _with_cors(Response())


def _error_response(
    error: str, error_description: str | None = None, status_code: int = 400
) -> JSONResponse:
    """Create an RFC 6749 / RFC 7591 error response.

    Args:
        error: Error code
        error_description: Optional error description
        status_code: HTTP status code

    Returns:
        JSONResponse with error details and CORS headers
    """
    response_data = {"error": error}
    if error_description:
        response_data["error_description"] = error_description
    return _with_cors(JSONResponse(response_data, status_code=status_code))


def _redirect(redirect_uri: str, **params: str | None) -> RedirectResponse:
    """Redirect to ``redirect_uri`` with ``params`` added to its query string."""
    parsed = urllib.parse.urlsplit(redirect_uri)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    location = urllib.parse.urlunsplit(parsed._replace(query=urllib.parse.urlencode(query)))
    return RedirectResponse(location, status_code=302)


async def register_client(request: Request) -> Response:
    """Handle OAuth 2.0 Dynamic Client Registration (RFC 7591).

    POST /register

    Request body:
        {
            "redirect_uris": ["https://claude.ai/api/mcp/auth_callback"],
            "client_name": "Claude",
            "scope": "mcp:read mcp:write",
            "token_endpoint_auth_method": "none"
        }

    Returns:
        Client registration response with client_id (and client_secret for
        confidential clients)
    """
    try:
        body = await request.json()
    except ValueError:
        return _error_response("invalid_request", "Invalid JSON in request body", 400)
    if not isinstance(body, dict):
        return _error_response("invalid_request", "Request body must be a JSON object", 400)

    redirect_uris = body.get("redirect_uris")
    if not redirect_uris or not isinstance(redirect_uris, list):
        return _error_response(
            "invalid_redirect_uri",
            "redirect_uris is required and must be a non-empty list",
            400,
        )
    for uri in redirect_uris:
        if not isinstance(uri, str) or not uri.startswith(("http://", "https://")):
            return _error_response(
                "invalid_redirect_uri",
                f"Invalid redirect_uri: {uri}. Must be HTTP/HTTPS URL",
                400,
            )

    auth_method = body.get("token_endpoint_auth_method") or "client_secret_basic"
    if auth_method not in TOKEN_AUTH_METHODS:
        return _error_response(
            "invalid_client_metadata",
            f"Unsupported token_endpoint_auth_method: {auth_method}",
            400,
        )

    registry = get_gateway(request).clients
    try:
        registration = registry.register_client(
            redirect_uris=redirect_uris,
            client_name=body.get("client_name"),
            client_uri=body.get("client_uri"),
            scope=body.get("scope"),
            grant_types=body.get("grant_types"),
            response_types=body.get("response_types"),
            token_endpoint_auth_method=auth_method,
        )
    except OSError as e:
        logger.error(f"Failed to register client: {e}", exc_info=True)
        return _error_response("server_error", "Failed to register client", 500)

    audit(
        AuditAction.CLIENT_REGISTERED,
        client_id=registration["client_id"],
        user_ip=client_ip(request),
        metadata={"client_name": body.get("client_name"), "auth_method": auth_method},
    )
    return _with_cors(JSONResponse(registration, status_code=201))


async def authorize(request: Request) -> Response:
    """Handle an OAuth 2.1 authorization request.

    GET /authorize?response_type=code&client_id=...&redirect_uri=...&scope=...&state=...
        &code_challenge=...&code_challenge_method=S256

    Returns:
        Redirect to ``redirect_uri`` carrying ``code`` and ``state``, or
        ``error=access_denied`` when no identity can be resolved
    """
    params = request.query_params
    response_type = params.get("response_type")
    client_id = params.get("client_id")
    redirect_uri = params.get("redirect_uri")
    state = params.get("state")
    code_challenge = params.get("code_challenge")
    code_challenge_method = params.get("code_challenge_method") or (
        "plain" if code_challenge else None
    )

    if not client_id:
        return _error_response("invalid_request", "client_id is required", 400)
    if not redirect_uri:
        return _error_response("invalid_request", "redirect_uri is required", 400)
    if response_type != "code":
        return _error_response(
            "unsupported_response_type",
            f"response_type must be 'code', got '{response_type}'",
            400,
        )

    gateway = get_gateway(request)
    client = gateway.clients.get_client(client_id)
    if client is not None:
        if not gateway.clients.validate_redirect_uri(client_id, redirect_uri):
            return _error_response(
                "invalid_request",
                "redirect_uri does not match registered redirect_uris",
                400,
            )
    else:
        if not redirect_uri.startswith(("http://", "https://")):
            return _error_response(
                "invalid_request", "redirect_uri must be an HTTP/HTTPS URL", 400
            )
        logger.info(f"Authorization request from unregistered client {client_id}")

    if code_challenge and code_challenge_method not in PKCE_METHODS:
        return _error_response(
            "invalid_request",
            f"code_challenge_method must be one of {', '.join(PKCE_METHODS)}",
            400,
        )

    user_id = await gateway.identity.resolve(
        bearer_token(request) or params.get("access_token")
    )
    if not user_id:
        audit(
            AuditAction.AUTHENTICATION_FAILURE,
            AuditResult.DENIED,
            client_id=client_id,
            auth_method="oauth",
            user_ip=client_ip(request),
            error_message="No identity for authorization request",
        )
        return _redirect(
            redirect_uri,
            error="access_denied",
            error_description="Unable to verify the user identity",
            state=state,
        )

    requested_scope = params.get("scope") or (client or {}).get("scope")
    grant = OAuthGrant(
        client_id=client_id,
        user_id=user_id,
        scopes=tuple(normalize_scopes(requested_scope)),
    )
    code = gateway.tokens.create_code(
        PendingAuthorization(
            grant=grant,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method if code_challenge else None,
        )
    )
    logger.info(f"Authorization granted to {client_id} for scopes {grant.scope}")
    return _redirect(redirect_uri, code=code, state=state)


async def _read_token_body(request: Request) -> dict[str, Any] | None:
    """Token request parameters from a JSON or form-encoded body."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _basic_credentials(request: Request) -> tuple[str | None, str | None]:
    """Client id and secret from an HTTP Basic Authorization header."""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.lower().startswith("basic "):
        return None, None
    try:
        decoded = base64.b64decode(auth_header[6:].strip()).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None, None
    client_id, _, client_secret = decoded.partition(":")
    return (
        urllib.parse.unquote_plus(client_id) or None,
        urllib.parse.unquote_plus(client_secret) or None,
    )


async def token(request: Request) -> Response:
    """Handle an OAuth 2.1 token request.

    POST /token

    Supports ``authorization_code`` (with PKCE) and ``refresh_token`` grants.
    Client credentials may be sent with HTTP Basic or in the body.

    Returns:
        RFC 6749 token response
    """
    body = await _read_token_body(request)
    if body is None:
        return _error_response("invalid_request", "Invalid request body", 400)

    basic_id, basic_secret = _basic_credentials(request)
    grant_type = body.get("grant_type")
    client_id = body.get("client_id") or basic_id
    client_secret = body.get("client_secret") or basic_secret

    if not grant_type:
        return _error_response("invalid_request", "grant_type is required", 400)
    if not client_id:
        return _error_response("invalid_request", "client_id is required", 400)

    gateway = get_gateway(request)
    registry = gateway.clients
    if client_secret and not registry.validate_client_credentials(client_id, client_secret):
        audit(
            AuditAction.AUTHENTICATION_FAILURE,
            AuditResult.FAILURE,
            client_id=client_id,
            auth_method="oauth",
            user_ip=client_ip(request),
            error_message="Invalid client credentials",
        )
        return _error_response("invalid_client", "Invalid client credentials", 401)

    if grant_type == "authorization_code":
        code = body.get("code")
        redirect_uri = body.get("redirect_uri")
        code_verifier = body.get("code_verifier")
        if not code:
            return _error_response("invalid_request", "code is required", 400)

        pending = gateway.tokens.consume_code(code)
        if pending is None:
            return _error_response("invalid_grant", "Invalid or expired authorization code", 400)
        if pending.grant.client_id != client_id:
            return _error_response(
                "invalid_grant", "Authorization code was issued to another client", 400
            )
        if redirect_uri and redirect_uri != pending.redirect_uri:
            return _error_response(
                "invalid_grant", "redirect_uri does not match the authorization request", 400
            )

        if pending.code_challenge:
            if not code_verifier:
                return _error_response(
                    "invalid_request",
                    "code_verifier is required (PKCE was used during authorization)",
                    400,
                )
            challenge = derive_code_challenge(
                code_verifier, pending.code_challenge_method or "plain"
            )
            if challenge is None or not secrets.compare_digest(
                challenge, pending.code_challenge
            ):
                logger.warning(f"PKCE verification failed for client {client_id}")
                return _error_response("invalid_grant", "Invalid code_verifier", 400)
        elif registry.is_confidential(client_id):
            if not client_secret:
                return _error_response(
                    "invalid_client", "client_secret is required when PKCE is not used", 401
                )
        else:
            return _error_response(
                "invalid_request", "PKCE is required for public clients", 400
            )

        token_response = gateway.tokens.issue_tokens(pending.grant)
        grant = pending.grant

    elif grant_type == "refresh_token":
        refresh_token = body.get("refresh_token")
        if not refresh_token:
            return _error_response("invalid_request", "refresh_token is required", 400)
        if registry.is_confidential(client_id) and not client_secret:
            return _error_response(
                "invalid_client", "client_secret is required for confidential clients", 401
            )
        token_response = gateway.tokens.refresh(refresh_token, client_id)
        if token_response is None:
            return _error_response("invalid_grant", "Invalid or expired refresh token", 400)
        grant = gateway.tokens.verify_access_token(token_response["access_token"])

    else:
        return _error_response(
            "unsupported_grant_type",
            f"grant_type must be 'authorization_code' or 'refresh_token', got '{grant_type}'",
            400,
        )

    audit(
        AuditAction.TOKEN_ISSUED,
        user_id=grant.user_id if grant else None,
        client_id=client_id,
        auth_method="oauth",
        user_ip=client_ip(request),
        metadata={"grant_type": grant_type, "scope": token_response.get("scope")},
    )
    response = JSONResponse(token_response, headers={"Cache-Control": "no-store"})
    return _with_cors(response)


async def oauth_metadata(request: Request) -> Response:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414).

    GET /.well-known/oauth-authorization-server
    """
    base_url = f"{request.url.scheme}://{request.url.netloc}"
    metadata = {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/authorize",
        "token_endpoint": f"{base_url}/token",
        "registration_endpoint": f"{base_url}/register",
        "scopes_supported": list(SUPPORTED_SCOPES),
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "code_challenge_methods_supported": list(PKCE_METHODS),
        "token_endpoint_auth_methods_supported": list(TOKEN_AUTH_METHODS),
    }
    return _with_cors(JSONResponse(metadata))
