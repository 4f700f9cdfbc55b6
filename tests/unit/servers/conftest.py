"""Fixtures for gateway application tests."""

from dataclasses import replace

import httpx
import pytest
from starlette.testclient import TestClient

from chitty_connect.config import GatewayConfig, ServiceEndpoints
from chitty_connect.servers.main import create_app
from chitty_connect.utils.api_keys import ApiKeyStore
from chitty_connect.utils.metrics import MetricsCollector
from chitty_connect.utils.rate_limit import RateLimiter

API_BASE_URL = "https://connect.chitty.cc"


class Upstream:
    """Mock transport handler: canned responses keyed by method and URL."""

    def __init__(self):
        self.routes: dict[tuple[str, str], httpx.Response] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, url: str, response: httpx.Response) -> None:
        self.routes[(method, url)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        response = self.routes.get((request.method, url))
        if response is None:
            return httpx.Response(404, json={"error": f"no route for {url}"})
        return response


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def gateway_config(tmp_path):
    return GatewayConfig(
        oauth_signing_secret="test-signing-secret",
        oauth_clients_path=str(tmp_path / "oauth-clients.json"),
        api_keys_path=str(tmp_path / "api-keys.json"),
        exports_dir=str(tmp_path / "exports"),
        fallback_user_id="CHITTY-P-0001",
        heartbeat_interval=0.05,
        endpoints=ServiceEndpoints(
            ledger_url="https://ledger.test",
            contextual_url="https://contextual.test",
            chittyid_url="https://id.test",
            trust_url="https://trust.test",
            proof_url="https://proof.test",
        ),
    )


@pytest.fixture
def key_store(gateway_config):
    return ApiKeyStore(gateway_config.api_keys_path)


@pytest.fixture
def api_key(key_store):
    key, _ = key_store.create("test key", user_id="CHITTY-P-0001")
    return key


@pytest.fixture
def make_client(gateway_config, upstream):
    """Build a TestClient for a gateway app; keyword overrides go to GatewayConfig."""

    def factory(
        base_url: str = API_BASE_URL,
        env: dict | None = None,
        rate_limiter: RateLimiter | None = None,
        metrics: MetricsCollector | None = None,
        **overrides,
    ) -> TestClient:
        config = replace(gateway_config, **overrides)
        app = create_app(
            config,
            env=env or {},
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
            rate_limiter=rate_limiter or RateLimiter(enabled=False),
            metrics=metrics,
        )
        return TestClient(app, base_url=base_url)

    return factory


@pytest.fixture
def client(make_client):
    return make_client()
