from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from reglens.apps.api.deps import build_services
from reglens.apps.api.main import create_app
from reglens.core.config import get_settings
from reglens.core.errors import StoreUnavailableError
from reglens.domain.models import UsageCounter
from reglens.tests.utils.factories import seed_tier
from reglens.tests.utils.fakes import FakeEmbeddings, FakeSearchBackend


_ADMIN_KEY = "admin-secret"
_JWT_SECRET = "jwt-test-secret"


class _ExplodingBackend(FakeSearchBackend):
    async def search(self, embedding, *, match_threshold, match_count, options):  # type: ignore[override]
        raise RuntimeError("unexpected handler failure")


def _apply_env(monkeypatch, **overrides: str) -> None:
    # Apply environment overrides and reset cached settings.
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()


def _app(session_factory, backend=None):
    services = build_services(
        session_factory,
        embeddings=FakeEmbeddings(),  # type: ignore[arg-type]
        search_backend=backend or FakeSearchBackend(),
    )
    return create_app(services=services), services


def _user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
def api_env(monkeypatch) -> None:
    _apply_env(monkeypatch, AUTH_DEV_BYPASS="true", ADMIN_API_KEY=_ADMIN_KEY)


async def _counter_rows(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(UsageCounter))).scalar_one()


@pytest.mark.asyncio
async def test_unauthenticated_search_is_rejected_without_counting(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "data retention"})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert await _counter_rows(session_factory) == 0


@pytest.mark.asyncio
async def test_free_user_gets_twenty_searches_then_429(session_factory, api_env) -> None:
    app, services = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for index in range(20):
            response = await client.get(
                "/v1/search",
                params={"q": f"data retention {index}", "limit": 50},
                headers=_user("user-free"),
            )
            assert response.status_code == 200
        last_ok = response
        denied = await client.post(
            "/v1/search",
            json={"query": "data retention"},
            headers=_user("user-free"),
        )
    await services.quota.wait_for_background_tasks()

    assert last_ok.headers["X-RateLimit-Limit"] == "20"
    assert last_ok.headers["X-RateLimit-Remaining"] == "0"
    assert last_ok.headers["X-RateLimit-Unlimited"] == "false"
    assert last_ok.json()["data"]["total"] == 5

    assert denied.status_code == 429
    body = denied.json()
    assert body["error"] == "QUOTA_EXCEEDED"
    assert body["quota"]["usage"] == 21
    assert body["quota"]["limit"] == 20
    assert body["quota"]["remaining"] == 0
    assert 0 <= body["quota"]["reset_in_seconds"] <= 86400
    assert body["upgrade"]["suggested_tier"] == "pro"
    assert denied.headers["X-RateLimit-Remaining"] == "0"
    assert int(denied.headers["Retry-After"]) == body["quota"]["reset_in_seconds"]
    assert int(denied.headers["X-RateLimit-Reset"]) == int(
        datetime.fromisoformat(body["quota"]["period_end"]).timestamp()
    )


@pytest.mark.asyncio
async def test_enterprise_user_sees_unlimited_headers(session_factory, api_env) -> None:
    await seed_tier(session_factory, "user-ent", "enterprise")
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(
            "/v1/search",
            params={"q": "breach notification"},
            headers=_user("user-ent"),
        )

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "unlimited"
    assert response.headers["X-RateLimit-Remaining"] == "unlimited"
    assert response.headers["X-RateLimit-Unlimited"] == "true"


@pytest.mark.asyncio
async def test_store_failure_fails_closed_by_default(session_factory, api_env, monkeypatch) -> None:
    app, services = _app(session_factory)

    async def _unavailable(*args, **kwargs):
        raise StoreUnavailableError("usage_counters unavailable during increment_and_check")

    monkeypatch.setattr(services.quota, "increment_quota", _unavailable)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "QUOTA_CHECK_FAILED"


@pytest.mark.asyncio
async def test_store_failure_can_fail_open(session_factory, api_env, monkeypatch) -> None:
    _apply_env(monkeypatch, QUOTA_FAIL_MODE="open")
    app, services = _app(session_factory)

    async def _unavailable(*args, **kwargs):
        raise StoreUnavailableError("usage_counters unavailable during increment_and_check")

    monkeypatch.setattr(services.quota, "increment_quota", _unavailable)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Status"] == "degraded"
    assert "X-RateLimit-Limit" not in response.headers


@pytest.mark.asyncio
async def test_unhandled_errors_still_carry_quota_headers(session_factory, api_env) -> None:
    app, _ = _app(session_factory, backend=_ExplodingBackend())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"
    assert response.headers["X-RateLimit-Remaining"] == "19"
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_quota_status_lists_every_quota(session_factory, api_env) -> None:
    await seed_tier(session_factory, "user-pro", "pro")
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-pro"))
        response = await client.get("/v1/quota/status", headers=_user("user-pro"))

    data = response.json()["data"]
    assert response.status_code == 200
    assert data["tier"] == "pro"
    assert data["results_per_search"] == 50
    assert data["quotas"]["search"]["usage"]["usage_count"] == 1
    assert data["quotas"]["search"]["usage"]["remaining"] == 499
    assert data["quotas"]["api_call"]["allowed"] is False


@pytest.mark.asyncio
async def test_statistics_window_is_validated(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bad = await client.get("/v1/quota/statistics", params={"days": 0}, headers=_user("user-free"))
        good = await client.get("/v1/quota/statistics", params={"days": 30}, headers=_user("user-free"))

    assert bad.status_code == 400
    assert bad.json()["error"]["code"] == "INVALID_QUOTA_INPUT"
    assert good.status_code == 200
    assert good.json()["data"]["period_days"] == 30


@pytest.mark.asyncio
async def test_prompts_can_be_listed_and_dismissed(session_factory, api_env) -> None:
    app, services = _app(session_factory)
    await services.quota.increment_quota("user-free", "search", 21)
    await services.quota.wait_for_background_tasks()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        listed = await client.get("/v1/quota/prompts", headers=_user("user-free"))
        prompt_id = listed.json()["data"]["prompts"][0]["id"]
        foreign = await client.patch(
            "/v1/quota/prompts",
            json={"prompt_id": prompt_id, "action": "dismiss"},
            headers=_user("user-other"),
        )
        dismissed = await client.patch(
            "/v1/quota/prompts",
            json={"prompt_id": prompt_id, "action": "dismiss"},
            headers=_user("user-free"),
        )
        after = await client.get("/v1/quota/prompts", headers=_user("user-free"))
        invalid = await client.patch(
            "/v1/quota/prompts",
            json={"prompt_id": prompt_id, "action": "snooze"},
            headers=_user("user-free"),
        )

    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "PROMPT_NOT_FOUND"
    assert dismissed.status_code == 200
    assert dismissed.json()["data"]["prompt"]["dismissed_at"] is not None
    assert after.json()["data"]["prompts"] == []
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_manual_reset_requires_the_admin_key(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.post("/v1/quota/reset")
        wrong = await client.post("/v1/quota/reset", headers={"X-Admin-Api-Key": "nope"})
        ok = await client.post("/v1/quota/reset", headers={"X-Admin-Api-Key": _ADMIN_KEY})
        status = await client.get("/v1/quota/reset", headers={"X-Admin-Api-Key": _ADMIN_KEY})

    assert missing.status_code == 401
    assert wrong.status_code == 403
    assert ok.status_code == 200
    assert ok.json()["data"]["status"] == "success"
    assert ok.json()["data"]["trigger"] == "manual"
    data = status.json()["data"]
    assert data["scheduler"]["running"] is False
    assert [row["trigger"] for row in data["recent_resets"]] == ["manual"]


@pytest.mark.asyncio
async def test_cache_admin_routes(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    admin = {"X-Admin-Api-Key": _ADMIN_KEY}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))
        cached = await client.get("/v1/search", params={"q": "GDPR"}, headers=_user("user-free"))
        stats = await client.get("/v1/search/cache/stats", headers=admin)
        invalidated = await client.request(
            "DELETE",
            "/v1/search/cache",
            json={"query": "gdpr", "tier": "free"},
            headers=admin,
        )
        cleared = await client.post("/v1/search/cache/clear-expired", headers=admin)

    assert cached.json()["data"]["cached"] is True
    assert stats.json()["data"]["total_entries"] == 1
    assert stats.json()["data"]["popular_queries"][0]["hit_count"] == 1
    assert invalidated.json()["data"]["invalidated"] is True
    assert cleared.json()["data"]["removed"] == 0


@pytest.mark.asyncio
async def test_bearer_tokens_resolve_the_user(session_factory, monkeypatch) -> None:
    _apply_env(monkeypatch, AUTH_JWT_SECRET=_JWT_SECRET)
    await seed_tier(session_factory, "user-jwt", "pro")
    app, _ = _app(session_factory)
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode(
        {"sub": "user-jwt", "aud": "authenticated", "exp": exp},
        _JWT_SECRET,
        algorithm="HS256",
    )
    forged = jwt.encode({"sub": "user-jwt", "aud": "authenticated", "exp": exp}, "other", algorithm="HS256")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        ok = await client.get("/v1/quota/status", headers={"Authorization": f"Bearer {token}"})
        rejected = await client.get("/v1/quota/status", headers={"Authorization": f"Bearer {forged}"})
        # Without the dev bypass the header is ignored.
        spoofed = await client.get("/v1/quota/status", headers=_user("user-jwt"))

    assert ok.status_code == 200
    assert ok.json()["data"]["tier"] == "pro"
    assert rejected.status_code == 401
    assert spoofed.status_code == 401


@pytest.mark.asyncio
async def test_health_reports_database(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/health")

    assert response.status_code == 200
    assert response.json()["data"]["database"] == "ok"


@pytest.mark.asyncio
async def test_health_reports_embedding_outage(session_factory, api_env) -> None:
    services = build_services(
        session_factory,
        embeddings=FakeEmbeddings(healthy=False),  # type: ignore[arg-type]
        search_backend=FakeSearchBackend(),
    )
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/health")

    data = response.json()["data"]
    assert response.status_code == 200
    assert (data["status"], data["database"], data["embedding"]) == ("degraded", "ok", "unavailable")


@pytest.mark.asyncio
async def test_shutdown_closes_search_clients(session_factory, api_env, monkeypatch) -> None:
    _apply_env(monkeypatch, QUOTA_SCHEDULER_ENABLED="false")
    embeddings = FakeEmbeddings()
    backend = FakeSearchBackend()
    services = build_services(session_factory, embeddings=embeddings, search_backend=backend)  # type: ignore[arg-type]
    app = create_app(services=services)

    async with app.router.lifespan_context(app):
        assert embeddings.closed is False

    assert embeddings.closed is True
    assert backend.closed is True


async def _never_answers(*args, **kwargs):
    await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_slow_quota_check_fails_closed(session_factory, api_env, monkeypatch) -> None:
    _apply_env(monkeypatch, QUOTA_CHECK_TIMEOUT_MS="20")
    app, services = _app(session_factory)
    monkeypatch.setattr(services.quota, "increment_quota", _never_answers)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "QUOTA_CHECK_FAILED"
    assert "X-RateLimit-Limit" not in response.headers


@pytest.mark.asyncio
async def test_slow_quota_check_can_fail_open(session_factory, api_env, monkeypatch) -> None:
    _apply_env(monkeypatch, QUOTA_CHECK_TIMEOUT_MS="20", QUOTA_FAIL_MODE="open")
    app, services = _app(session_factory)
    monkeypatch.setattr(services.quota, "increment_quota", _never_answers)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_daily_usage_is_zero_filled(session_factory, api_env) -> None:
    app, _ = _app(session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        for _ in range(3):
            await client.get("/v1/search", params={"q": "gdpr"}, headers=_user("user-free"))
        response = await client.get("/v1/quota/daily", params={"days": 3}, headers=_user("user-free"))
        invalid = await client.get("/v1/quota/daily", params={"days": 0}, headers=_user("user-free"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["period_days"] == 3
    today = datetime.now(timezone.utc).date()
    assert [entry["date"] for entry in data["daily"]] == [
        (today - timedelta(days=offset)).isoformat() for offset in (2, 1, 0)
    ]
    assert data["daily"][-1]["usage"] == {"search": 3, "export": 0, "api_call": 0}
    assert all(set(entry["usage"].values()) == {0} for entry in data["daily"][:2])
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "INVALID_QUOTA_INPUT"
