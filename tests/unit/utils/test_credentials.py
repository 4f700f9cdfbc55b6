"""Unit tests for service credential resolution."""

from unittest.mock import AsyncMock

import pytest

from chitty_connect.utils.credentials import ServiceCredentials, service_token_env_var
from chitty_connect.utils.logging import mask_sensitive


class TestServiceTokenEnvVar:
    def test_names(self):
        assert service_token_env_var("chittyid") == "CHITTY_ID_TOKEN"
        assert service_token_env_var("trust") == "CHITTY_TRUST_TOKEN"
        assert service_token_env_var("ledger") == "CHITTY_LEDGER_TOKEN"


class TestServiceCredentials:
    """Tests for ServiceCredentials."""

    @pytest.mark.anyio
    async def test_env_fallback_without_vault(self):
        credentials = ServiceCredentials()
        env = {"CHITTY_ID_TOKEN": "env-token"}
        assert await credentials.get_service_token(env, "chittyid") == "env-token"

    @pytest.mark.anyio
    async def test_vault_wins(self):
        vault = AsyncMock()
        vault.get.return_value = "vault-token"
        credentials = ServiceCredentials(vault)

        token = await credentials.get_service_token({"CHITTY_ID_TOKEN": "env"}, "chittyid")

        assert token == "vault-token"
        vault.get.assert_awaited_once_with("services/chittyid/service_token")

    @pytest.mark.anyio
    async def test_vault_empty_falls_back(self):
        vault = AsyncMock()
        vault.get.return_value = None
        credentials = ServiceCredentials(vault)
        assert await credentials.get_service_token({"CHITTY_ID_TOKEN": "env"}, "chittyid") == "env"

    @pytest.mark.anyio
    async def test_vault_failure_falls_back(self):
        vault = AsyncMock()
        vault.get.side_effect = RuntimeError("vault down")
        credentials = ServiceCredentials(vault)
        assert await credentials.get_service_token({"CHITTY_ID_TOKEN": "env"}, "chittyid") == "env"

    @pytest.mark.anyio
    async def test_nothing_configured(self):
        credentials = ServiceCredentials()
        assert await credentials.get_service_token({"CHITTY_ID_TOKEN": ""}, "chittyid") is None


class TestMaskSensitive:
    def test_mask(self):
        assert mask_sensitive("chitty_abcdef123456") == "chit" + "*" * 11 + "3456"
        assert mask_sensitive("short") == "*****"
        assert mask_sensitive(None) == ""
