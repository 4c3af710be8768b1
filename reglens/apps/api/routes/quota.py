from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from reglens.apps.api.deps import ServiceContainer, get_current_user, get_services, require_admin
from reglens.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from reglens.apps.api.response import success_response
from reglens.domain.tiers import get_policy
from reglens.services.identity import CurrentUser


router = APIRouter(prefix="/quota", tags=["quota"], responses=DEFAULT_ERROR_RESPONSES)


class PromptActionRequest(BaseModel):
    prompt_id: str = Field(min_length=1)
    action: Literal["dismiss", "convert"]


@router.get("/status")
async def quota_status(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    statuses = await services.quota.get_all_quota_status(user.id)
    policy = get_policy(user.tier)
    return success_response(
        request=request,
        data={
            "user_id": user.id,
            "tier": user.tier,
            "results_per_search": policy.results_per_search,
            "quotas": {quota_type: result.to_dict() for quota_type, result in statuses.items()},
        },
    )


@router.get("/statistics")
async def usage_statistics(
    request: Request,
    days: int = Query(default=7),
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    # Range validation lives in the manager so every caller gets the same 400.
    statistics = await services.quota.get_usage_statistics(user.id, days)
    return success_response(
        request=request,
        data={
            "user_id": user.id,
            "period_days": days,
            "statistics": [item.to_dict() for item in statistics],
        },
    )


@router.get("/daily")
async def daily_usage(
    request: Request,
    days: int = Query(default=7),
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    daily = await services.quota.get_daily_usage(user.id, days)
    return success_response(
        request=request,
        data={"user_id": user.id, "period_days": days, "daily": [entry.to_dict() for entry in daily]},
    )


@router.get("/prompts")
async def list_prompts(
    request: Request,
    include_dismissed: bool = Query(default=False),
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    prompts = await services.quota.get_upgrade_prompts(user.id, include_dismissed=include_dismissed)
    return success_response(
        request=request,
        data={"user_id": user.id, "prompts": [prompt.to_dict() for prompt in prompts]},
    )


@router.patch("/prompts")
async def update_prompt(
    request: Request,
    payload: PromptActionRequest,
    user: CurrentUser = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    if payload.action == "dismiss":
        prompt = await services.quota.dismiss_upgrade_prompt(user.id, payload.prompt_id)
    else:
        prompt = await services.quota.mark_upgrade_prompt_converted(user.id, payload.prompt_id)
    return success_response(request=request, data={"prompt": prompt.to_dict()})


@router.post("/reset", dependencies=[Depends(require_admin)])
async def trigger_reset(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    outcome = await services.scheduler.manual_reset()
    return success_response(request=request, data=outcome.to_dict())


@router.get("/reset", dependencies=[Depends(require_admin)])
async def reset_status(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    return success_response(
        request=request,
        data={
            "scheduler": services.scheduler.get_status(),
            "recent_resets": await services.scheduler.recent_resets(limit=10),
        },
    )
