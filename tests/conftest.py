import pytest

from chitty_connect.utils.audit import reset_audit_logger
from chitty_connect.utils.metrics import reset_metrics
from chitty_connect.utils.rate_limit import reset_rate_limiter


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_globals(monkeypatch):
    """Keep audit output, rate limits and metrics from leaking between tests."""
    monkeypatch.setenv("AUDIT_LOG_ENABLED", "false")
    reset_audit_logger()
    reset_rate_limiter()
    reset_metrics()
    yield
    reset_audit_logger()
    reset_rate_limiter()
    reset_metrics()
