"""Trust resolution and permission checks for fact governance.

Trust levels come from ChittyTrust and gate the seal, dispute and export
actions on facts.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum, IntEnum
from typing import Any
from urllib.parse import quote

import httpx
from cachetools import TTLCache

logger = logging.getLogger("chitty-connect.utils.trust")

TRUST_CACHE_TTL = 300  # 5 minutes
CACHE_MAXSIZE = 10000
SOURCE_SERVICE = "chittyconnect"


class TrustLevel(IntEnum):
    """ChittyTrust levels, lowest to highest."""

    ANONYMOUS = 0
    BASIC = 1
    ENHANCED = 2
    PROFESSIONAL = 3
    INSTITUTIONAL = 4
    OFFICIAL = 5


@dataclass(frozen=True)
class TrustProfile:
    """Resolved trust of one ChittyID."""

    trust_level: int
    entity_type: str


DEFAULT_TRUST_PROFILE = TrustProfile(trust_level=TrustLevel.BASIC, entity_type="P")


@dataclass(frozen=True)
class ActionPolicy:
    """Requirements an actor must meet to perform a fact action."""

    name: str
    entity_types: tuple[str, ...] | None  # None allows any entity type
    min_trust: TrustLevel


class FactAction(Enum):
    """Permission-gated fact actions."""

    SEAL = ActionPolicy("seal", ("A",), TrustLevel.INSTITUTIONAL)
    DISPUTE = ActionPolicy("dispute", ("P", "A"), TrustLevel.ENHANCED)
    EXPORT = ActionPolicy("export", None, TrustLevel.BASIC)


@dataclass
class PermissionResult:
    """Outcome of a permission check."""

    allowed: bool
    action: str
    trust_level: int
    entity_type: str
    required_level: int
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class TrustResolver:
    """Looks up trust profiles from ChittyTrust with a short-lived cache."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token: str | None = None,
        base_url: str = "https://trust.chitty.cc",
        cache_ttl: int = TRUST_CACHE_TTL,
    ) -> None:
        """Initialize the resolver.

        Args:
            http_client: Shared async HTTP client
            token: ChittyTrust bearer token (CHITTY_TRUST_TOKEN)
            base_url: ChittyTrust base URL
            cache_ttl: Seconds a resolved profile is reused
        """
        self.http_client = http_client
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._cache: TTLCache[str, TrustProfile] = TTLCache(
            maxsize=CACHE_MAXSIZE, ttl=cache_ttl
        )
        if not token:
            logger.warning("CHITTY_TRUST_TOKEN is not set; trust lookups will be unauthenticated")

    async def resolve(self, chitty_id: str) -> TrustProfile:
        """Resolve the trust profile of a ChittyID.

        Lookups that fail for any reason resolve to BASIC trust with entity
        type "P" and are not cached.

        Args:
            chitty_id: ChittyID of the actor

        Returns:
            The actor's TrustProfile
        """
        cached = self._cache.get(chitty_id)
        if cached is not None:
            return cached

        headers = {"X-Source-Service": SOURCE_SERVICE}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        url = f"{self.base_url}/api/v1/trust/{quote(chitty_id, safe='')}"
        try:
            response = await self.http_client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Trust lookup failed for {chitty_id}: {e}")
            return DEFAULT_TRUST_PROFILE

        if not response.is_success:
            logger.debug(f"Trust lookup for {chitty_id} returned {response.status_code}")
            return DEFAULT_TRUST_PROFILE

        try:
            data = response.json()
            profile = TrustProfile(
                trust_level=int(
                    data["trust_level"]
                    if data.get("trust_level") is not None
                    else TrustLevel.BASIC
                ),
                entity_type=str(data.get("entity_type") or "P"),
            )
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Malformed trust response for {chitty_id}: {e}")
            return DEFAULT_TRUST_PROFILE

        self._cache[chitty_id] = profile
        return profile

    def clear_cache(self) -> None:
        self._cache.clear()


class PermissionChecker:
    """Checks fact actions against an actor's resolved trust."""

    def __init__(self, resolver: TrustResolver) -> None:
        self.resolver = resolver

    async def check_permission(
        self, actor_id: str | None, action: FactAction
    ) -> PermissionResult:
        """Check whether ``actor_id`` may perform ``action``.

        Args:
            actor_id: ChittyID of the acting entity
            action: The fact action being attempted

        Returns:
            PermissionResult; ``reason`` explains a denial
        """
        policy = action.value
        if not actor_id:
            return PermissionResult(
                allowed=False,
                action=policy.name,
                trust_level=TrustLevel.ANONYMOUS,
                entity_type="",
                required_level=policy.min_trust,
                reason="actor_chitty_id is required",
            )

        profile = await self.resolver.resolve(actor_id)
        result = PermissionResult(
            allowed=True,
            action=policy.name,
            trust_level=profile.trust_level,
            entity_type=profile.entity_type,
            required_level=policy.min_trust,
        )

        if policy.entity_types and profile.entity_type not in policy.entity_types:
            result.allowed = False
            result.reason = (
                f'Action "{policy.name}" requires entity type '
                f'{" or ".join(policy.entity_types)}, got "{profile.entity_type}"'
            )
        elif profile.trust_level < policy.min_trust:
            result.allowed = False
            result.reason = (
                f'Action "{policy.name}" requires trust level '
                f"{int(policy.min_trust)}, got {int(profile.trust_level)}"
            )

        if not result.allowed:
            logger.info(f"Denied {policy.name} for {actor_id}: {result.reason}")
        return result
