from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status

from reglens.apps.api.deps import ServiceContainer, authenticate, get_services
from reglens.apps.api.errors import QuotaDenied
from reglens.core.config import get_settings
from reglens.core.errors import StoreUnavailableError
from reglens.services.quota import QuotaCheckResult


logger = logging.getLogger(__name__)


def _check_failed_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "QUOTA_CHECK_FAILED", "message": "Quota check failed"},
    )


def require_quota(
    quota_type: str,
    *,
    amount: int = 1,
    check_only: bool = False,
) -> Callable[..., Awaitable[QuotaCheckResult | None]]:
    """Route dependency enforcing a daily quota before the handler runs.

    Authentication happens first, so unauthenticated calls never touch a counter.
    The decision is stored on ``request.state.quota_result`` and the HTTP
    middleware turns it into X-RateLimit-* headers on whatever response is sent.
    """

    async def dependency(
        request: Request,
        services: ServiceContainer = Depends(get_services),
    ) -> QuotaCheckResult | None:
        user = await authenticate(request, services)
        settings = get_settings()
        if not settings.quota_enabled:
            return None

        if check_only:
            call = services.quota.check_quota(user.id, quota_type)
        else:
            call = services.quota.increment_quota(user.id, quota_type, amount)
        try:
            result = await asyncio.wait_for(call, timeout=settings.quota_check_timeout_ms / 1000.0)
        except (StoreUnavailableError, asyncio.TimeoutError) as exc:
            logger.error(
                "quota_check_failed path=%s user_id=%s quota_type=%s error=%s",
                request.url.path,
                user.id,
                quota_type,
                type(exc).__name__,
            )
            if settings.quota_fail_mode.lower() != "open":
                raise _check_failed_exception() from exc
            # Fail open: serve the request but flag the missing decision.
            request.state.quota_degraded = True
            logger.warning("quota_degraded path=%s", request.url.path)
            return None

        request.state.quota_result = result
        if not result.allowed:
            raise QuotaDenied(result, now=services.quota.now())
        return result

    return dependency
