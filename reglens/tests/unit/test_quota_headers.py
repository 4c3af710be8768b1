from __future__ import annotations

from datetime import datetime, timedelta, timezone

from starlette.requests import Request

from reglens.apps.api.errors import quota_exceeded_body
from reglens.services.quota import QuotaCheckResult, QuotaUsage, quota_headers, reset_in_seconds


_PERIOD_START = datetime(2026, 3, 10, tzinfo=timezone.utc)
_PERIOD_END = _PERIOD_START + timedelta(days=1)


def _result(*, usage: int, limit: int, tier: str = "free", exceeded: bool = False) -> QuotaCheckResult:
    remaining = None if limit == -1 else max(limit - usage, 0)
    return QuotaCheckResult(
        allowed=not exceeded,
        quota_type="search",
        current_tier=tier,
        usage=QuotaUsage(
            usage_count=usage,
            limit_value=limit,
            remaining=remaining,
            period_start=_PERIOD_START,
            period_end=_PERIOD_END,
        ),
        quota_exceeded=exceeded,
        show_upgrade_prompt=exceeded and tier != "enterprise",
        suggested_tier={"free": "pro", "pro": "enterprise"}.get(tier, "enterprise") if exceeded else None,
    )


def _request() -> Request:
    return Request({"type": "http", "method": "GET", "path": "/v1/search", "headers": []})


def test_headers_for_limited_quota() -> None:
    headers = quota_headers(_result(usage=19, limit=20))
    assert headers == {
        "X-RateLimit-Limit": "20",
        "X-RateLimit-Remaining": "1",
        "X-RateLimit-Reset": str(int(_PERIOD_END.timestamp())),
        "X-RateLimit-Unlimited": "false",
    }


def test_headers_for_unlimited_quota() -> None:
    headers = quota_headers(_result(usage=1000, limit=-1, tier="enterprise"))
    assert headers["X-RateLimit-Limit"] == "unlimited"
    assert headers["X-RateLimit-Remaining"] == "unlimited"
    assert headers["X-RateLimit-Unlimited"] == "true"


def test_reset_in_seconds_never_negative() -> None:
    result = _result(usage=21, limit=20, exceeded=True)
    assert reset_in_seconds(result, _PERIOD_END - timedelta(hours=1)) == 3600
    assert reset_in_seconds(result, _PERIOD_END + timedelta(hours=1)) == 0


def test_exceeded_body_includes_upgrade_block_below_top_tier() -> None:
    result = _result(usage=21, limit=20, exceeded=True)
    body = quota_exceeded_body(_request(), result, now=_PERIOD_END - timedelta(minutes=30))

    assert body["error"] == "QUOTA_EXCEEDED"
    assert body["quota"] == {
        "usage": 21,
        "limit": 20,
        "remaining": 0,
        "period_end": _PERIOD_END.isoformat(),
        "reset_in_seconds": 1800,
    }
    assert body["upgrade"]["current_tier"] == "free"
    assert body["upgrade"]["suggested_tier"] == "pro"
    assert body["meta"]["request_id"]


def test_exceeded_body_omits_upgrade_for_enterprise() -> None:
    result = _result(usage=0, limit=0, tier="enterprise", exceeded=True)
    body = quota_exceeded_body(_request(), result, now=_PERIOD_START)
    assert "upgrade" not in body
