from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from reglens.apps.api.deps import ServiceContainer, get_current_user, get_services, require_admin
from reglens.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from reglens.apps.api.quota_guard import require_quota
from reglens.apps.api.response import success_response
from reglens.domain.tiers import QUOTA_SEARCH
from reglens.services.identity import CurrentUser
from reglens.services.search import SearchOptions


router = APIRouter(tags=["search"])


class SearchOptionsModel(BaseModel):
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    domains: list[str] = Field(default_factory=list)
    document_types: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    date_from: str | None = None
    date_to: str | None = None
    min_relevance: float | None = Field(default=None, ge=0.0, le=1.0)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=1000)
    options: SearchOptionsModel = Field(default_factory=SearchOptionsModel)


class CacheInvalidateRequest(SearchRequest):
    # Cached entries are keyed by tier-clamped options; name the tier whose entry to drop.
    tier: str = "free"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@router.get("/search", responses=QUOTA_ERROR_RESPONSES)
async def search_get(
    request: Request,
    q: str = Query(min_length=1, max_length=1000),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    domain: str | None = Query(default=None),
    type: str | None = Query(default=None),
    source: str | None = Query(default=None),
    date_from: str | None = Query(default=None, alias="dateFrom"),
    date_to: str | None = Query(default=None, alias="dateTo"),
    min_score: float | None = Query(default=None, alias="minScore", ge=0.0, le=1.0),
    _quota: Any = Depends(require_quota(QUOTA_SEARCH)),
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    options = SearchOptions(
        limit=limit,
        offset=offset,
        domains=_split_csv(domain),
        document_types=_split_csv(type),
        sources=_split_csv(source),
        date_from=date_from,
        date_to=date_to,
        min_relevance=min_score,
    )
    result = await services.search.semantic_search(q, options, tier=user.tier)
    return success_response(request=request, data=result)


@router.post("/search", responses=QUOTA_ERROR_RESPONSES)
async def search_post(
    request: Request,
    payload: SearchRequest,
    _quota: Any = Depends(require_quota(QUOTA_SEARCH)),
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    options = SearchOptions(**payload.options.model_dump())
    result = await services.search.semantic_search(payload.query, options, tier=user.tier)
    return success_response(request=request, data=result)


@router.get(
    "/search/cache/stats",
    dependencies=[Depends(require_admin)],
    responses=DEFAULT_ERROR_RESPONSES,
)
async def cache_stats(
    request: Request,
    popular: int = Query(default=10, ge=1, le=100),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    stats = await services.cache.get_stats()
    stats["popular_queries"] = await services.cache.get_popular_queries(popular)
    return success_response(request=request, data=stats)


@router.delete(
    "/search/cache",
    dependencies=[Depends(require_admin)],
    responses=DEFAULT_ERROR_RESPONSES,
)
async def invalidate_cache_entry(
    request: Request,
    payload: CacheInvalidateRequest,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    options = SearchOptions(**payload.options.model_dump())
    filters = services.search.effective_filters(options, tier=payload.tier)
    removed = await services.cache.invalidate(payload.query, filters)
    return success_response(request=request, data={"invalidated": removed})


@router.post(
    "/search/cache/clear-expired",
    dependencies=[Depends(require_admin)],
    responses=DEFAULT_ERROR_RESPONSES,
)
async def clear_expired_cache(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    removed = await services.cache.clear_expired()
    return success_response(request=request, data={"removed": removed})
