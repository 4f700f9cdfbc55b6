"""Unit tests for rate limiting functionality."""

import os
from unittest.mock import patch

from chitty_connect.utils.rate_limit import (
    RateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)


class TestRateLimiter:
    """Test RateLimiter class."""

    def test_init_with_defaults(self):
        """Test RateLimiter initialization with default values."""
        limiter = RateLimiter()
        assert limiter.enabled is True
        assert limiter.window_seconds == 60
        assert limiter.api_key_limit == 1000
        assert limiter.client_limit == 300
        assert limiter.ip_limit == 600
        assert limiter.tool_limit == 120

    def test_check_api_key_uses_key_limit(self):
        """A key's own rateLimit overrides the default."""
        limiter = RateLimiter(api_key_limit=100)
        for _ in range(3):
            assert limiter.check_api_key("chitty_abc", limit=3)[0] is True

        is_allowed, error_msg, retry_after = limiter.check_api_key("chitty_abc", limit=3)
        assert is_allowed is False
        assert error_msg.startswith("Rate limit exceeded")
        assert retry_after == 60

    def test_check_api_key_default_limit(self):
        """Keys without a rateLimit use the default."""
        limiter = RateLimiter(api_key_limit=2)
        assert limiter.check_api_key("chitty_abc")[0] is True
        assert limiter.check_api_key("chitty_abc")[0] is True
        assert limiter.check_api_key("chitty_abc")[0] is False
        assert limiter.check_api_key("chitty_other")[0] is True

    def test_check_rate_limit_client_exceeded(self):
        """Test rate limit check for an OAuth client."""
        limiter = RateLimiter(client_limit=3)
        for _ in range(3):
            is_allowed, error_msg, retry_after = limiter.check_rate_limit(client_id="client-1")
            assert is_allowed is True
            assert error_msg is None
            assert retry_after is None

        is_allowed, error_msg, retry_after = limiter.check_rate_limit(client_id="client-1")
        assert is_allowed is False
        assert "Rate limit exceeded" in error_msg
        assert retry_after == 60

    def test_check_rate_limit_ip_exceeded(self):
        """Test rate limit check for a client IP."""
        limiter = RateLimiter(ip_limit=2, window_seconds=30)
        assert limiter.check_rate_limit(user_ip="10.0.0.1")[0] is True
        assert limiter.check_rate_limit(user_ip="10.0.0.1")[0] is True
        is_allowed, _, retry_after = limiter.check_rate_limit(user_ip="10.0.0.1")
        assert is_allowed is False
        assert retry_after == 30

    def test_check_tool_is_per_caller(self):
        """One caller exhausting a tool leaves other callers unaffected."""
        limiter = RateLimiter(tool_limit=1)
        assert limiter.check_tool("alice", "chitty_case_get")[0] is True

        is_allowed, error_msg, _ = limiter.check_tool("alice", "chitty_case_get")
        assert is_allowed is False
        assert "chitty_case_get" in error_msg
        assert error_msg.startswith("Rate limit exceeded")

        assert limiter.check_tool("bob", "chitty_case_get")[0] is True
        assert limiter.check_tool("alice", "chitty_case_create")[0] is True

    def test_check_rate_limit_with_tool(self):
        """check_rate_limit also counts the tool when one is given."""
        limiter = RateLimiter(tool_limit=1)
        assert limiter.check_rate_limit(client_id="c", tool_name="chitty_ping")[0] is True
        assert limiter.check_rate_limit(client_id="c", tool_name="chitty_ping")[0] is False

    def test_disabled_limiter_allows_everything(self):
        """Test that a disabled limiter never denies."""
        limiter = RateLimiter(enabled=False, api_key_limit=1, client_limit=1, tool_limit=1)
        for _ in range(5):
            assert limiter.check_api_key("k") == (True, None, None)
            assert limiter.check_rate_limit(client_id="c", user_ip="ip") == (True, None, None)
            assert limiter.check_tool("c", "t") == (True, None, None)

    def test_from_env(self):
        """Test RateLimiter.from_env with custom environment variables."""
        with patch.dict(
            os.environ,
            {
                "RATE_LIMIT_ENABLED": "true",
                "RATE_LIMIT_WINDOW_SECONDS": "120",
                "RATE_LIMIT_API_KEY_REQUESTS": "50",
                "RATE_LIMIT_CLIENT_REQUESTS": "40",
                "RATE_LIMIT_IP_REQUESTS": "30",
                "RATE_LIMIT_TOOL_REQUESTS": "20",
            },
            clear=True,
        ):
            limiter = RateLimiter.from_env()
        assert limiter.window_seconds == 120
        assert limiter.api_key_limit == 50
        assert limiter.client_limit == 40
        assert limiter.ip_limit == 30
        assert limiter.tool_limit == 20


class TestGlobalRateLimiter:
    """Test global rate limiter accessors."""

    def test_get_rate_limiter_returns_same_instance(self):
        with patch.dict(os.environ, {"RATE_LIMIT_ENABLED": "true"}, clear=True):
            reset_rate_limiter()
            limiter = get_rate_limiter()
            assert limiter is not None
            assert get_rate_limiter() is limiter

    def test_get_rate_limiter_none_when_disabled(self):
        with patch.dict(os.environ, {"RATE_LIMIT_ENABLED": "false"}, clear=True):
            reset_rate_limiter()
            assert get_rate_limiter() is None
