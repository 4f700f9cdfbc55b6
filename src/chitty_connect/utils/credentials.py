"""Service credential resolution.

Tokens are looked up in the credential vault first and fall back to
``CHITTY_<SERVICE>_TOKEN`` environment variables.
"""

import logging
from collections.abc import Mapping
from typing import Protocol

from chitty_connect.utils.logging import mask_sensitive

logger = logging.getLogger("chitty-connect.utils.credentials")


class CredentialVault(Protocol):
    """Secret store holding service credentials by path."""

    async def get(self, path: str) -> str | None: ...


def service_token_env_var(service_name: str) -> str:
    """Environment variable holding the fallback token for a service.

    ``chittyid`` maps to ``CHITTY_ID_TOKEN`` and ``trust`` to ``CHITTY_TRUST_TOKEN``.
    """
    return f"CHITTY_{service_name.upper().replace('CHITTY', '')}_TOKEN"


class ServiceCredentials:
    """Resolves credentials for downstream services."""

    def __init__(self, vault: CredentialVault | None = None) -> None:
        self.vault = vault

    async def get_credential(
        self, env: Mapping[str, str], path: str, fallback_env_var: str
    ) -> str | None:
        """Get a credential from the vault, falling back to the environment.

        Args:
            env: Service environment mapping
            path: Vault path of the credential
            fallback_env_var: Environment variable used when the vault has nothing

        Returns:
            The credential or None when neither source has it
        """
        if self.vault is not None:
            try:
                credential = await self.vault.get(path)
                if credential:
                    logger.debug(f"Resolved {path} from vault: {mask_sensitive(credential)}")
                    return credential
            except Exception as e:
                logger.warning(
                    f"Vault retrieval failed for {path}, using {fallback_env_var}: {e}"
                )

        return env.get(fallback_env_var) or None

    async def get_service_token(
        self, env: Mapping[str, str], service_name: str
    ) -> str | None:
        """Get the service token used to call ``service_name``."""
        return await self.get_credential(
            env,
            f"services/{service_name}/service_token",
            service_token_env_var(service_name),
        )
