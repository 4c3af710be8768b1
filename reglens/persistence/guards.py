from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from reglens.core.errors import InvalidQuotaInputError, StoreUnavailableError


logger = logging.getLogger(__name__)


def require_user_id(user_id: str | None) -> str:
    # Every counter and prompt is partitioned by user; never query without one.
    if not user_id or not str(user_id).strip():
        raise InvalidQuotaInputError("user_id is required")
    return str(user_id)


def dialect_insert(session: AsyncSession, model: Any) -> Any:
    # Pick the dialect insert that supports ON CONFLICT upserts.
    bind = session.get_bind()
    if bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


@asynccontextmanager
async def store_guard(store: str, operation: str) -> AsyncIterator[None]:
    # Translate driver/connection failures into a single infrastructure error type.
    try:
        yield
    except StoreUnavailableError:
        raise
    except (SQLAlchemyError, OSError) as exc:
        logger.error("store_unavailable store=%s operation=%s", store, operation, exc_info=exc)
        raise StoreUnavailableError(f"{store} unavailable during {operation}") from exc
