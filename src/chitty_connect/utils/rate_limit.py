"""Fixed-window rate limiting for API keys, OAuth clients, IPs and tools.

Counters live in TTL caches whose TTL is the window length, so a window
starts at the first request after the previous counter expired.
"""

import logging
import os
from typing import Optional

from cachetools import TTLCache

from chitty_connect.utils.logging import mask_sensitive

logger = logging.getLogger("chitty-connect.utils.rate_limit")

DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_API_KEY_RATE_LIMIT_REQUESTS = 1000  # keys without their own rateLimit
DEFAULT_CLIENT_RATE_LIMIT_REQUESTS = 300
DEFAULT_IP_RATE_LIMIT_REQUESTS = 600
DEFAULT_TOOL_RATE_LIMIT_REQUESTS = 120

RateLimitCheck = tuple[bool, Optional[str], Optional[int]]
ALLOWED: RateLimitCheck = (True, None, None)


class RateLimiter:
    """Counts requests per API key, OAuth client, client IP and tool."""

    def __init__(
        self,
        enabled: bool = True,
        window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        api_key_limit: int = DEFAULT_API_KEY_RATE_LIMIT_REQUESTS,
        client_limit: int = DEFAULT_CLIENT_RATE_LIMIT_REQUESTS,
        ip_limit: int = DEFAULT_IP_RATE_LIMIT_REQUESTS,
        tool_limit: int = DEFAULT_TOOL_RATE_LIMIT_REQUESTS,
    ):
        """Initialize rate limiter.

        Args:
            enabled: Whether rate limiting is enabled
            window_seconds: Window length in seconds
            api_key_limit: Requests per window for keys without their own limit
            client_limit: Requests per window per OAuth subject
            ip_limit: Requests per window per client IP
            tool_limit: Calls per window per caller and tool
        """
        self.enabled = enabled
        self.window_seconds = window_seconds
        self.api_key_limit = api_key_limit
        self.client_limit = client_limit
        self.ip_limit = ip_limit
        self.tool_limit = tool_limit

        self.key_cache: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=window_seconds)
        self.client_cache: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=window_seconds)
        self.ip_cache: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=window_seconds)
        self.tool_cache: TTLCache[str, int] = TTLCache(maxsize=10000, ttl=window_seconds)

    def _hit(
        self, cache: TTLCache, key: str, limit: int, subject: str
    ) -> RateLimitCheck:
        count = cache.get(key, 0)
        if count >= limit:
            logger.warning(f"Rate limit exceeded for {subject}: {count}/{limit} requests")
            return (
                False,
                f"Rate limit exceeded: {limit} requests per {self.window_seconds} seconds",
                self.window_seconds,
            )
        cache[key] = count + 1
        return ALLOWED

    def check_api_key(self, api_key: str, limit: Optional[int] = None) -> RateLimitCheck:
        """Count one request against an API key.

        Args:
            api_key: The presented key
            limit: The key's own ``rateLimit``; the default applies when None

        Returns:
            Tuple of (is_allowed, error_message, retry_after_seconds)
        """
        if not self.enabled:
            return ALLOWED
        return self._hit(
            self.key_cache,
            f"key:{api_key}",
            limit or self.api_key_limit,
            f"API key {mask_sensitive(api_key)}",
        )

    def check_rate_limit(
        self,
        client_id: Optional[str] = None,
        user_ip: Optional[str] = None,
        tool_name: Optional[str] = None,
    ) -> RateLimitCheck:
        """Count one request against the caller, its IP and, for tool calls, the tool.

        The tool counter is kept per caller, so one busy client cannot exhaust
        a tool for everybody.

        Returns:
            Tuple of (is_allowed, error_message, retry_after_seconds)
        """
        if not self.enabled:
            return ALLOWED

        if client_id:
            check = self._hit(
                self.client_cache, f"client:{client_id}", self.client_limit, f"client {client_id}"
            )
            if not check[0]:
                return check

        if user_ip:
            check = self._hit(self.ip_cache, f"ip:{user_ip}", self.ip_limit, f"IP {user_ip}")
            if not check[0]:
                return check

        if tool_name:
            return self.check_tool(client_id or user_ip or "anonymous", tool_name)

        return ALLOWED

    def check_tool(self, caller: str, tool_name: str) -> RateLimitCheck:
        """Count one call of ``tool_name`` by ``caller``.

        Returns:
            Tuple of (is_allowed, error_message, retry_after_seconds)
        """
        if not self.enabled:
            return ALLOWED
        check = self._hit(
            self.tool_cache,
            f"tool:{caller}:{tool_name}",
            self.tool_limit,
            f"tool {tool_name} ({caller})",
        )
        if not check[0]:
            return (
                False,
                f"Rate limit exceeded for tool '{tool_name}': "
                f"{self.tool_limit} requests per {self.window_seconds} seconds",
                check[2],
            )
        return ALLOWED

    @classmethod
    def from_env(cls) -> "RateLimiter":
        """Create rate limiter from environment variables.

        Environment variables:
        - RATE_LIMIT_ENABLED: Enable rate limiting (default: true)
        - RATE_LIMIT_WINDOW_SECONDS: Window length in seconds (default: 60)
        - RATE_LIMIT_API_KEY_REQUESTS: Default per-key limit (default: 1000)
        - RATE_LIMIT_CLIENT_REQUESTS: Per OAuth subject (default: 300)
        - RATE_LIMIT_IP_REQUESTS: Per client IP (default: 600)
        - RATE_LIMIT_TOOL_REQUESTS: Per caller and tool (default: 120)

        Returns:
            Configured RateLimiter instance
        """
        return cls(
            enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() in ("true", "1", "yes"),
            window_seconds=int(
                os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS))
            ),
            api_key_limit=int(
                os.getenv(
                    "RATE_LIMIT_API_KEY_REQUESTS", str(DEFAULT_API_KEY_RATE_LIMIT_REQUESTS)
                )
            ),
            client_limit=int(
                os.getenv("RATE_LIMIT_CLIENT_REQUESTS", str(DEFAULT_CLIENT_RATE_LIMIT_REQUESTS))
            ),
            ip_limit=int(
                os.getenv("RATE_LIMIT_IP_REQUESTS", str(DEFAULT_IP_RATE_LIMIT_REQUESTS))
            ),
            tool_limit=int(
                os.getenv("RATE_LIMIT_TOOL_REQUESTS", str(DEFAULT_TOOL_RATE_LIMIT_REQUESTS))
            ),
        )


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> Optional[RateLimiter]:
    """Get the global rate limiter instance.

    Returns:
        RateLimiter instance if enabled, None otherwise
    """
    global _rate_limiter

    if _rate_limiter is None:
        _rate_limiter = RateLimiter.from_env()
        if _rate_limiter.enabled:
            logger.info(
                f"Rate limits per {_rate_limiter.window_seconds}s - "
                f"API key: {_rate_limiter.api_key_limit}, "
                f"client: {_rate_limiter.client_limit}, "
                f"IP: {_rate_limiter.ip_limit}, "
                f"tool: {_rate_limiter.tool_limit}"
            )
        else:
            logger.debug("Rate limiting is disabled")

    return _rate_limiter if _rate_limiter.enabled else None


def reset_rate_limiter() -> None:
    """Drop the global rate limiter so it is rebuilt from the environment."""
    global _rate_limiter
    _rate_limiter = None
