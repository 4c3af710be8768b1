from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol

import jwt
from fastapi import Request

from reglens.core.config import get_settings
from reglens.core.errors import ProviderConfigError
from reglens.persistence.repos.user_profiles import UserProfileStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    tier: str
    email: str | None = None


class IdentityProvider(Protocol):
    async def get_current_user(self, request: Request) -> CurrentUser | None:
        ...


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


class JwtIdentityProvider:
    """Verifies hosted-auth access tokens and resolves the caller's tier."""

    def __init__(self, profiles: UserProfileStore) -> None:
        self._profiles = profiles

    async def get_current_user(self, request: Request) -> CurrentUser | None:
        settings = get_settings()
        if settings.auth_dev_bypass and request.headers.get("X-User-Id"):
            return await self._from_dev_headers(request)

        token = _parse_bearer_token(request.headers.get(settings.auth_header))
        if token is None:
            return None
        if not settings.auth_jwt_secret:
            raise ProviderConfigError("AUTH_JWT_SECRET is required to verify access tokens")

        algorithms = [alg.strip() for alg in settings.auth_jwt_algorithms.split(",") if alg.strip()]
        try:
            claims = jwt.decode(
                token,
                settings.auth_jwt_secret,
                algorithms=algorithms,
                audience=settings.auth_jwt_audience,
                options={"require": ["sub", "exp"], "verify_aud": bool(settings.auth_jwt_audience)},
            )
        except jwt.PyJWTError as exc:
            logger.info("auth_token_rejected reason=%s", type(exc).__name__)
            return None

        user_id = str(claims["sub"])
        tier = await self._profiles.get_tier(user_id)
        return CurrentUser(id=user_id, tier=tier, email=claims.get("email"))

    async def _from_dev_headers(self, request: Request) -> CurrentUser:
        # Local development only: trust the caller-supplied user id; tier still comes from the profile.
        user_id = request.headers["X-User-Id"]
        return CurrentUser(id=user_id, tier=await self._profiles.get_tier(user_id))
