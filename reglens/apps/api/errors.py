from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from reglens.apps.api.response import error_response, is_versioned_request, response_meta
from reglens.core.errors import (
    EmbeddingServiceError,
    InvalidQuotaInputError,
    PromptNotFoundError,
    ProviderConfigError,
    SearchBackendError,
    StoreUnavailableError,
)
from reglens.domain.tiers import is_terminal_tier
from reglens.services.quota import QuotaCheckResult, quota_headers, reset_in_seconds


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_UNAVAILABLE",
}


class QuotaDenied(Exception):
    """Raised by the quota guard when a request is over its daily limit."""

    def __init__(self, result: QuotaCheckResult, *, now: datetime) -> None:
        super().__init__(f"{result.quota_type} quota exceeded")
        self.result = result
        self.now = now


def _code_for(status_code: int) -> str:
    return _STATUS_CODES.get(status_code, f"HTTP_{status_code}")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException with {code, message, ...extra}; plain strings keep the status default.
    if not isinstance(detail, dict):
        message = detail if isinstance(detail, str) and detail else "Request failed"
        return _code_for(status_code), message, None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return (
        str(detail.get("code") or _code_for(status_code)),
        str(detail.get("message") or "Request failed"),
        extra or None,
    )


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


def quota_exceeded_body(request: Request, result: QuotaCheckResult, *, now: datetime) -> dict[str, Any]:
    # Denials carry the usage, the reset time and, below the top tier, an upgrade suggestion.
    usage = result.usage
    body: dict[str, Any] = {
        "error": "QUOTA_EXCEEDED",
        "message": f"Daily {result.quota_type} limit of {usage.limit_value} reached for the {result.current_tier} tier",
        "quota": {
            "usage": usage.usage_count,
            "limit": usage.limit_value,
            "remaining": usage.remaining,
            "period_end": usage.period_end.isoformat(),
            "reset_in_seconds": reset_in_seconds(result, now),
        },
    }
    if result.suggested_tier and not is_terminal_tier(result.current_tier):
        body["upgrade"] = {
            "current_tier": result.current_tier,
            "suggested_tier": result.suggested_tier,
            "message": f"Upgrade to {result.suggested_tier} for a higher daily {result.quota_type} limit",
        }
    body["meta"] = response_meta(request)
    return body


async def quota_denied_handler(request: Request, exc: QuotaDenied) -> JSONResponse:
    headers = quota_headers(exc.result)
    headers["Retry-After"] = str(reset_in_seconds(exc.result, exc.now))
    return JSONResponse(
        content=quota_exceeded_body(request, exc.result, now=exc.now),
        status_code=429,
        headers=headers,
    )


async def invalid_quota_input_handler(request: Request, exc: InvalidQuotaInputError) -> JSONResponse:
    return _envelope(request, status_code=400, code="INVALID_QUOTA_INPUT", message=str(exc))


async def prompt_not_found_handler(request: Request, exc: PromptNotFoundError) -> JSONResponse:
    return _envelope(request, status_code=404, code="PROMPT_NOT_FOUND", message=str(exc))


async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("store_unavailable_response path=%s error=%s", request.url.path, exc)
    return _envelope(request, status_code=500, code="STORE_UNAVAILABLE", message="Storage temporarily unavailable")


async def upstream_error_handler(
    request: Request, exc: EmbeddingServiceError | SearchBackendError
) -> JSONResponse:
    logger.warning("upstream_unavailable path=%s error=%s", request.url.path, type(exc).__name__)
    return _envelope(request, status_code=502, code="UPSTREAM_UNAVAILABLE", message=str(exc))


async def provider_config_handler(request: Request, exc: ProviderConfigError) -> JSONResponse:
    logger.error("provider_config_error path=%s error=%s", request.url.path, exc)
    return _envelope(request, status_code=500, code="PROVIDER_CONFIG_ERROR", message="Service misconfigured")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
