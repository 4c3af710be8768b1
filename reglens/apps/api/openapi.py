from __future__ import annotations

from typing import Any

from reglens.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _envelope_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


QUOTA_EXCEEDED_EXAMPLE: dict[str, Any] = {
    "error": "QUOTA_EXCEEDED",
    "message": "Daily search limit of 20 reached for the free tier",
    "quota": {
        "usage": 21,
        "limit": 20,
        "remaining": 0,
        "period_end": "2026-01-02T00:00:00+00:00",
        "reset_in_seconds": 3600,
    },
    "upgrade": {
        "current_tier": "free",
        "suggested_tier": "pro",
        "message": "Upgrade to pro for a higher daily search limit",
    },
    "meta": {"request_id": "req_example", "api_version": "v1"},
}


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _envelope_response("Bad request", "INVALID_QUOTA_INPUT", "amount must not be negative"),
    401: _envelope_response("Unauthorized", "AUTH_UNAUTHORIZED", "Authentication required"),
    403: _envelope_response("Forbidden", "AUTH_FORBIDDEN", "Admin API key rejected"),
    404: _envelope_response("Not found", "PROMPT_NOT_FOUND", "Upgrade prompt not found"),
    422: _envelope_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _envelope_response("Internal server error", "QUOTA_CHECK_FAILED", "Quota check failed"),
    502: _envelope_response("Upstream unavailable", "UPSTREAM_UNAVAILABLE", "Failed to execute search"),
}

QUOTA_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    429: {
        "description": "Daily quota exceeded",
        "content": {"application/json": {"example": QUOTA_EXCEEDED_EXAMPLE}},
    },
}
