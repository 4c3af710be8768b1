from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.core.config import get_settings
from reglens.domain.models import QuotaResetLog
from reglens.persistence.guards import store_guard
from reglens.services.quota import QuotaManager


logger = logging.getLogger(__name__)

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped_lock"


@dataclass(frozen=True)
class ResetOutcome:
    status: str
    trigger: str
    reset_date: str
    users_reset: int = 0
    quotas_reset: int = 0
    execution_time_ms: int = 0
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "trigger": self.trigger,
            "reset_date": self.reset_date,
            "users_reset": self.users_reset,
            "quotas_reset": self.quotas_reset,
            "execution_time_ms": self.execution_time_ms,
            "error_message": self.error_message,
        }


@dataclass(slots=True)
class _ResetLock:
    token: str
    redis: Redis | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def next_utc_midnight(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return today + timedelta(days=1)


class QuotaResetScheduler:
    """Zeroes expired usage counters at every UTC midnight.

    Each run is single-flight and appends one quota_reset_log row whether it
    succeeds or fails. Runs skipped because another holder owns the lock are not
    logged. Failures never escape execute_reset.
    """

    def __init__(
        self,
        *,
        manager: QuotaManager,
        session_factory: async_sessionmaker[AsyncSession],
        redis: Redis | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._manager = manager
        self._session_factory = session_factory
        self._redis = redis
        self._time_provider = time_provider or _utc_now
        self._local_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Task[ResetOutcome] | None = None
        self._next_reset: datetime | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="quota-reset-scheduler")
        logger.info("quota_scheduler_started")

    async def stop(self) -> None:
        # Cancel the armed timer; a reset that already started is allowed to finish.
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._in_flight is not None and not self._in_flight.done():
            await self._in_flight
        self._next_reset = None
        logger.info("quota_scheduler_stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "next_reset": self._next_reset.isoformat() if self._next_reset else None,
        }

    async def recent_resets(self, limit: int = 10) -> list[dict[str, Any]]:
        async with store_guard("quota_reset_log", "recent_resets"):
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(QuotaResetLog)
                        .order_by(QuotaResetLog.created_at.desc(), QuotaResetLog.id.desc())
                        .limit(max(1, int(limit)))
                    )
                ).scalars().all()
        return [
            {
                "id": row.id,
                "reset_date": row.reset_date,
                "users_reset": row.users_reset,
                "quotas_reset": row.quotas_reset,
                "execution_time_ms": row.execution_time_ms,
                "status": row.status,
                "trigger": row.trigger,
                "error_message": row.error_message,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]

    async def manual_reset(self) -> ResetOutcome:
        return await self.execute_reset(TRIGGER_MANUAL)

    async def execute_reset(self, trigger: str = TRIGGER_SCHEDULED) -> ResetOutcome:
        now = self._time_provider()
        reset_date = now.date().isoformat()
        try:
            lock = await self._acquire_lock()
        except Exception as exc:  # noqa: BLE001 - an unreachable lock backend is a failed run
            logger.exception("quota_reset_lock_unavailable trigger=%s", trigger)
            outcome = ResetOutcome(
                status=STATUS_FAILED,
                trigger=trigger,
                reset_date=reset_date,
                error_message=f"reset lock unavailable: {exc or exc.__class__.__name__}",
            )
            await self._write_log(outcome)
            return outcome
        if lock is None:
            logger.info("quota_reset_skipped_lock trigger=%s", trigger)
            return ResetOutcome(status=STATUS_SKIPPED, trigger=trigger, reset_date=reset_date)

        started = time.perf_counter()
        try:
            counts = await self._manager.reset_daily_quotas()
            outcome = ResetOutcome(
                status=STATUS_SUCCESS,
                trigger=trigger,
                reset_date=reset_date,
                users_reset=counts.users_reset,
                quotas_reset=counts.quotas_reset,
                execution_time_ms=int((time.perf_counter() - started) * 1000),
            )
            logger.info(
                "quota_reset_completed trigger=%s users_reset=%s quotas_reset=%s execution_time_ms=%s",
                trigger,
                outcome.users_reset,
                outcome.quotas_reset,
                outcome.execution_time_ms,
            )
        except Exception as exc:  # noqa: BLE001 - failures are recorded, never raised
            logger.exception("quota_reset_failed trigger=%s", trigger)
            outcome = ResetOutcome(
                status=STATUS_FAILED,
                trigger=trigger,
                reset_date=reset_date,
                execution_time_ms=int((time.perf_counter() - started) * 1000),
                error_message=str(exc) or exc.__class__.__name__,
            )
        finally:
            await self._release_lock(lock)

        await self._write_log(outcome)
        return outcome

    async def _run(self) -> None:
        while True:
            # Recompute the boundary each cycle so sleep drift never accumulates.
            now = self._time_provider()
            self._next_reset = next_utc_midnight(now)
            delay = max((self._next_reset - now).total_seconds(), 0.0)
            await asyncio.sleep(delay)
            self._in_flight = asyncio.ensure_future(self.execute_reset(TRIGGER_SCHEDULED))
            await asyncio.shield(self._in_flight)
            # Never fire twice for the same boundary when the clock lags the timer.
            if self._time_provider() < self._next_reset:
                await asyncio.sleep((self._next_reset - self._time_provider()).total_seconds())

    async def _write_log(self, outcome: ResetOutcome) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        QuotaResetLog(
                            reset_date=outcome.reset_date,
                            users_reset=outcome.users_reset,
                            quotas_reset=outcome.quotas_reset,
                            execution_time_ms=outcome.execution_time_ms,
                            status=outcome.status,
                            trigger=outcome.trigger,
                            error_message=outcome.error_message,
                        )
                    )
        except Exception:  # noqa: BLE001 - the reset itself already ran
            logger.exception("quota_reset_log_write_failed status=%s", outcome.status)

    async def _acquire_lock(self) -> _ResetLock | None:
        settings = get_settings()
        token = uuid4().hex
        if settings.quota_reset_lock_backend == "redis":
            redis = self._redis_client()
            ttl_s = max(5, int(settings.quota_reset_lock_ttl_s))
            acquired = await redis.set(settings.quota_reset_lock_key, token, nx=True, ex=ttl_s)
            # Held by another process: skip quietly, that holder logs the run.
            if not acquired:
                return None
            return _ResetLock(token=token, redis=redis)

        if self._local_lock.locked():
            return None
        await self._local_lock.acquire()
        return _ResetLock(token=token, redis=None)

    async def _release_lock(self, lock: _ResetLock) -> None:
        # Release only if this run still owns the token to avoid clobbering a newer holder.
        if lock.redis is None:
            if self._local_lock.locked():
                self._local_lock.release()
            return
        key = get_settings().quota_reset_lock_key
        try:
            current = await lock.redis.get(key)
            value = current.decode("utf-8") if isinstance(current, bytes) else current
            if value == lock.token:
                await lock.redis.delete(key)
        except Exception as exc:  # noqa: BLE001 - the lock expires on its own
            logger.warning("quota_reset_lock_release_failed", exc_info=exc)

    def _redis_client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
