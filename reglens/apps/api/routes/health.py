from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from reglens.apps.api.deps import ServiceContainer, get_services
from reglens.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from reglens.apps.api.response import SuccessEnvelope, success_response


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    embedding: str
    scheduler_running: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, services: ServiceContainer = Depends(get_services)) -> dict:
    database = "ok"
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        database = "unavailable"
    embedding = "ok" if await services.search.embeddings_healthy() else "unavailable"
    payload = HealthResponse(
        status="ok" if database == embedding == "ok" else "degraded",
        database=database,
        embedding=embedding,
        scheduler_running=services.scheduler.running,
    )
    return success_response(request=request, data=payload.model_dump())
