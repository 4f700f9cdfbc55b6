"""API keys for the legacy (non-OAuth) MCP hosts.

Keys are stored in a JSON file keyed by the key itself. The file is re-read
when it changes on disk, so keys created with ``chitty-connect-keygen``
take effect without a restart.
"""

import json
import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chitty_connect.utils.logging import mask_sensitive

logger = logging.getLogger("chitty-connect.utils.api_keys")

API_KEY_PREFIX = "chitty_"
DEFAULT_KEY_SCOPES = ["mcp:read", "mcp:write"]
DEFAULT_KEY_RATE_LIMIT = 1000


def generate_api_key() -> str:
    """Return a new random key: ``chitty_`` followed by 64 hex characters."""
    return API_KEY_PREFIX + secrets.token_hex(32)


def key_expired(record: dict[str, Any], now: datetime | None = None) -> bool:
    """Whether a key record's ``expiresAt`` (ISO 8601) lies in the past.

    An unparseable ``expiresAt`` counts as expired.
    """
    expires_at = record.get("expiresAt")
    if not expires_at:
        return False
    try:
        expiry = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable expiresAt on API key record: {expires_at!r}")
        return True
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry <= (now or datetime.now(timezone.utc))


class ApiKeyStore:
    """JSON-file backed API key records."""

    def __init__(self, storage_path: str | None = None) -> None:
        """Initialize the store.

        Args:
            storage_path: Path of the key file. Defaults to
                ~/.chitty-connect/api-keys.json
        """
        if storage_path:
            self.storage_path = Path(storage_path)
        else:
            self.storage_path = Path.home() / ".chitty-connect" / "api-keys.json"
        self._keys: dict[str, dict[str, Any]] = {}
        self._mtime: float | None = None

    def _refresh(self) -> None:
        """Reload the key file if it changed.

        Raises:
            OSError: If the file exists but cannot be read
            ValueError: If the file is not valid JSON
        """
        if not self.storage_path.exists():
            self._keys, self._mtime = {}, None
            return
        mtime = self.storage_path.stat().st_mtime
        if mtime == self._mtime:
            return
        with open(self.storage_path) as f:
            self._keys = json.load(f).get("keys", {})
        self._mtime = mtime
        logger.debug(f"Loaded {len(self._keys)} API keys")

    def _save(self) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(self.storage_path, "w") as f:
            json.dump({"keys": self._keys}, f, indent=2)
        self.storage_path.chmod(0o600)
        self._mtime = self.storage_path.stat().st_mtime

    def get(self, api_key: str) -> dict[str, Any] | None:
        """Look up a key record.

        Raises:
            OSError: If the key file cannot be read
            ValueError: If the key file is corrupt
        """
        self._refresh()
        return self._keys.get(api_key)

    def create(
        self,
        name: str,
        user_id: str | None = None,
        scopes: list[str] | None = None,
        rate_limit: int = DEFAULT_KEY_RATE_LIMIT,
        expires_at: str | None = None,
    ) -> tuple[str, dict[str, Any]]:
        """Create and persist a new active key.

        Returns:
            Tuple of (api_key, record)
        """
        self._refresh()
        api_key = generate_api_key()
        record = {
            "status": "active",
            "name": name,
            "userId": user_id,
            "scopes": scopes or list(DEFAULT_KEY_SCOPES),
            "rateLimit": rate_limit,
            "expiresAt": expires_at,
            "metadata": {},
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self._keys[api_key] = record
        self._save()
        logger.info(f"Created API key {mask_sensitive(api_key)} ({name})")
        return api_key, record

    def revoke(self, api_key: str) -> bool:
        """Mark a key as revoked. Returns False for an unknown key."""
        self._refresh()
        record = self._keys.get(api_key)
        if record is None:
            return False
        record["status"] = "revoked"
        self._save()
        logger.info(f"Revoked API key {mask_sensitive(api_key)}")
        return True

