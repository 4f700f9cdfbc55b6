"""Command line tool creating API keys for the legacy MCP hosts.

Usage:
    chitty-connect-keygen --name "Claude Desktop" --user chitty_user_123
"""

import argparse
import json
import os
import sys
from datetime import datetime

from chitty_connect import __version__
from chitty_connect.utils.api_keys import (
    DEFAULT_KEY_RATE_LIMIT,
    DEFAULT_KEY_SCOPES,
    ApiKeyStore,
)


def _expiry(value: str) -> str:
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 timestamp: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chitty-connect-keygen",
        description="Generate an API key for MCP access and store it in the key file.",
    )
    parser.add_argument("--name", default="Unnamed API Key", help="Label for the key")
    parser.add_argument("--user", help="ChittyID the key acts as")
    parser.add_argument(
        "--scope",
        action="append",
        choices=["mcp:read", "mcp:write", "mcp:admin"],
        help=f"Scope to grant; repeatable (default: {' '.join(DEFAULT_KEY_SCOPES)})",
    )
    parser.add_argument(
        "--rate-limit",
        type=int,
        default=DEFAULT_KEY_RATE_LIMIT,
        help="Requests per rate limit window (default: %(default)s)",
    )
    parser.add_argument("--expires", type=_expiry, help="Expiry as an ISO 8601 timestamp")
    parser.add_argument(
        "--storage",
        help="Key file (default: API_KEYS_STORAGE_PATH or ~/.chitty-connect/api-keys.json)",
    )
    parser.add_argument("--json", action="store_true", help="Print the key record as JSON")
    parser.add_argument(
        "--version", action="version", version=f"chitty-connect-keygen {__version__}"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.rate_limit <= 0:
        print("error: --rate-limit must be positive", file=sys.stderr)
        return 2

    store = ApiKeyStore(args.storage or os.getenv("API_KEYS_STORAGE_PATH") or None)
    try:
        api_key, record = store.create(
            name=args.name,
            user_id=args.user,
            scopes=args.scope,
            rate_limit=args.rate_limit,
            expires_at=args.expires,
        )
    except (OSError, ValueError) as e:
        print(f"error: could not store API key in {store.storage_path}: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({"api_key": api_key, **record}, indent=2))
        return 0

    print(f"API key: {api_key}")
    print(f"Name:       {record['name']}")
    print(f"User:       {record['userId'] or '-'}")
    print(f"Scopes:     {' '.join(record['scopes'])}")
    print(f"Rate limit: {record['rateLimit']} requests per window")
    print(f"Expires:    {record['expiresAt'] or 'never'}")
    print(f"Stored in:  {store.storage_path}")
    print("\nSend it in the X-ChittyOS-API-Key header.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
