from __future__ import annotations

from dataclasses import dataclass
import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.core.config import get_settings
from reglens.persistence.repos.usage_counters import UsageCounterStore
from reglens.persistence.repos.user_profiles import UserProfileStore
from reglens.services.embeddings import EmbeddingClient
from reglens.services.identity import CurrentUser, IdentityProvider, JwtIdentityProvider
from reglens.services.notifications import PromptNotifier
from reglens.services.quota import QuotaManager
from reglens.services.quota_scheduler import QuotaResetScheduler
from reglens.services.search import DocumentSearchBackend, HttpDocumentSearch, SearchService
from reglens.services.search_cache import SearchResultCache
from reglens.services.upgrade_prompts import UpgradePromptTracker


@dataclass
class ServiceContainer:
    # Explicitly wired services shared by every request of one app instance.
    session_factory: async_sessionmaker[AsyncSession]
    profiles: UserProfileStore
    quota: QuotaManager
    scheduler: QuotaResetScheduler
    cache: SearchResultCache
    search: SearchService
    identity: IdentityProvider


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    identity: IdentityProvider | None = None,
    embeddings: EmbeddingClient | None = None,
    search_backend: DocumentSearchBackend | None = None,
    notifier: PromptNotifier | None = None,
) -> ServiceContainer:
    settings = get_settings()
    profiles = UserProfileStore(session_factory)
    prompts = UpgradePromptTracker(session_factory, cooldown_hours=settings.upgrade_prompt_cooldown_hours)
    quota = QuotaManager(
        store=UsageCounterStore(session_factory),
        profiles=profiles,
        prompts=prompts,
        notifier=notifier or PromptNotifier(),
    )
    cache = SearchResultCache(session_factory, default_ttl_s=settings.search_cache_ttl_s)
    return ServiceContainer(
        session_factory=session_factory,
        profiles=profiles,
        quota=quota,
        scheduler=QuotaResetScheduler(manager=quota, session_factory=session_factory),
        cache=cache,
        search=SearchService(
            cache=cache,
            embeddings=embeddings or EmbeddingClient(),
            backend=search_backend or HttpDocumentSearch(),
        ),
        identity=identity or JwtIdentityProvider(profiles),
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def authenticate(request: Request, services: ServiceContainer) -> CurrentUser:
    user = await services.identity.get_current_user(request)
    if user is None:
        raise _auth_error("Authentication required")
    request.state.user = user
    return user


async def get_current_user(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> CurrentUser:
    cached = getattr(request.state, "user", None)
    if cached is not None:
        return cached
    return await authenticate(request, services)


def require_admin(
    x_admin_api_key: str | None = Header(default=None, alias="X-Admin-Api-Key"),
) -> None:
    # Operator endpoints use a shared key rather than end-user identity.
    expected = get_settings().admin_api_key
    if not x_admin_api_key:
        raise _auth_error("Admin API key required")
    if not expected or not hmac.compare_digest(x_admin_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Admin API key rejected"},
        )
