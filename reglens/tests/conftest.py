from __future__ import annotations

import pytest

from reglens.core.config import get_settings
from reglens.domain.models import Base
from reglens.persistence.db import build_engine, build_session_factory
from reglens.tests.utils.factories import Clock, fixed_now


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite per test so concurrent connections share one database.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'reglens.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    return Clock(fixed_now())
