from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from reglens.apps.api.deps import ServiceContainer, build_services
from reglens.apps.api.errors import (
    QuotaDenied,
    http_exception_handler,
    invalid_quota_input_handler,
    prompt_not_found_handler,
    provider_config_handler,
    quota_denied_handler,
    store_unavailable_handler,
    unhandled_exception_handler,
    upstream_error_handler,
    validation_exception_handler,
)
from reglens.apps.api.response import API_VERSION
from reglens.apps.api.routes.health import router as health_router
from reglens.apps.api.routes.quota import router as quota_router
from reglens.apps.api.routes.search import router as search_router
from reglens.core.config import get_settings
from reglens.core.errors import (
    EmbeddingServiceError,
    InvalidQuotaInputError,
    PromptNotFoundError,
    ProviderConfigError,
    SearchBackendError,
    StoreUnavailableError,
)
from reglens.core.logging import configure_logging
from reglens.persistence.db import dispose_engine, get_session_factory
from reglens.services.quota import quota_headers


logger = logging.getLogger(__name__)


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    configure_logging()
    owns_engine = services is None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        container = app.state.services
        if get_settings().quota_scheduler_enabled:
            container.scheduler.start()
        yield
        await container.scheduler.stop()
        await container.scheduler.aclose()
        await container.search.aclose()
        # Let in-flight upgrade prompt work finish before pools close.
        await container.quota.wait_for_background_tasks()
        if owns_engine:
            await dispose_engine()

    app = FastAPI(title="reglens API", lifespan=lifespan)
    app.state.services = services or build_services(get_session_factory())

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        except Exception as exc:  # noqa: BLE001 - rendered as a 500 envelope below
            response = await unhandled_exception_handler(request, exc)

        # Quota headers accompany the response whatever the handler outcome.
        result = getattr(request.state, "quota_result", None)
        if result is not None:
            for key, value in quota_headers(result).items():
                response.headers[key] = value
        if getattr(request.state, "quota_degraded", False):
            response.headers["X-RateLimit-Status"] = "degraded"
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(QuotaDenied, quota_denied_handler)
    app.add_exception_handler(InvalidQuotaInputError, invalid_quota_input_handler)
    app.add_exception_handler(PromptNotFoundError, prompt_not_found_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_handler)
    app.add_exception_handler(EmbeddingServiceError, upstream_error_handler)
    app.add_exception_handler(SearchBackendError, upstream_error_handler)
    app.add_exception_handler(ProviderConfigError, provider_config_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(quota_router, prefix=f"/{API_VERSION}")
    app.include_router(search_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer and admin-key auth into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="reglens API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["AdminApiKey"] = {"type": "apiKey", "in": "header", "name": "X-Admin-Api-Key"}
        admin_paths = {"/v1/quota/reset", "/v1/search/cache", "/v1/search/cache/stats", "/v1/search/cache/clear-expired"}
        for path, operations in schema.get("paths", {}).items():
            if path == "/v1/health":
                continue
            scheme = "AdminApiKey" if path in admin_paths else "BearerAuth"
            for operation in operations.values():
                operation.setdefault("security", [{scheme: []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app
