from __future__ import annotations

import asyncio
import sys

from reglens.apps.api.deps import build_services
from reglens.core.logging import configure_logging
from reglens.persistence.db import dispose_engine, get_session_factory
from reglens.services.quota_scheduler import STATUS_FAILED, TRIGGER_SCHEDULED


async def _run() -> int:
    # One reset pass for external cron triggers; shares the lock and log with the in-process timer.
    configure_logging()
    services = build_services(get_session_factory())
    try:
        outcome = await services.scheduler.execute_reset(TRIGGER_SCHEDULED)
    finally:
        await services.scheduler.aclose()
        await dispose_engine()
    print(
        f"status={outcome.status} users_reset={outcome.users_reset} "
        f"quotas_reset={outcome.quotas_reset} execution_time_ms={outcome.execution_time_ms}"
    )
    return 1 if outcome.status == STATUS_FAILED else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_run()))
