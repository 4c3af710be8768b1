from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.domain.models import UserProfile
from reglens.domain.tiers import normalize_tier
from reglens.persistence.guards import require_user_id, store_guard


class UserProfileStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_tier(self, user_id: str) -> str:
        # Missing profiles and unrecognized tiers are treated as free.
        require_user_id(user_id)
        async with store_guard("user_profiles", "get_tier"):
            async with self._session_factory() as session:
                tier = (
                    await session.execute(select(UserProfile.tier).where(UserProfile.id == user_id))
                ).scalar_one_or_none()
        return normalize_tier(tier)

    async def upsert_profile(
        self,
        user_id: str,
        *,
        tier: str,
        email: str | None = None,
        subscription_status: str | None = None,
    ) -> UserProfile:
        require_user_id(user_id)
        async with store_guard("user_profiles", "upsert_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    profile = await session.get(UserProfile, user_id)
                    if profile is None:
                        profile = UserProfile(id=user_id)
                        session.add(profile)
                    profile.tier = normalize_tier(tier)
                    if email is not None:
                        profile.email = email
                    if subscription_status is not None:
                        profile.subscription_status = subscription_status
        return profile
