from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, tuple_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.domain.models import UsageCounter, UsageHistory
from reglens.domain.tiers import is_unlimited
from reglens.persistence.guards import dialect_insert, require_user_id, store_guard


_STORE = "usage_counters"


@dataclass(frozen=True)
class CounterSnapshot:
    # Point-in-time view of one (user, quota type, day) counter.
    user_id: str
    quota_type: str
    usage_count: int
    period_start: datetime
    period_end: datetime
    limit_value: int | None = None


@dataclass(frozen=True)
class IncrementOutcome:
    # Result of the atomic increment as observed by this caller.
    new_count: int
    limit: int
    remaining: int | None
    quota_exceeded: bool
    period_start: datetime
    period_end: datetime


@dataclass(frozen=True)
class ResetCounts:
    users_reset: int
    quotas_reset: int


@dataclass(frozen=True)
class DailyUsage:
    quota_type: str
    period_start: datetime
    usage_count: int
    limit_value: int | None


def period_bounds(now: datetime) -> tuple[datetime, datetime]:
    # Counters roll over at UTC midnight.
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def remaining_for(limit: int, usage_count: int) -> int | None:
    # None means unbounded; otherwise never report negative headroom.
    if is_unlimited(limit):
        return None
    return max(limit - usage_count, 0)


class UsageCounterStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_usage(self, user_id: str, quota_type: str, *, now: datetime) -> CounterSnapshot:
        # Return the current-period counter, creating a zero row the first time.
        require_user_id(user_id)
        period_start, period_end = period_bounds(now)
        async with store_guard(_STORE, "get_usage"):
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = dialect_insert(session, UsageCounter).values(
                        user_id=user_id,
                        quota_type=quota_type,
                        period_start=period_start,
                        period_end=period_end,
                        usage_count=0,
                        updated_at=now,
                    )
                    await session.execute(stmt.on_conflict_do_nothing())
                    row = (
                        await session.execute(
                            select(UsageCounter.usage_count, UsageCounter.limit_value).where(
                                UsageCounter.user_id == user_id,
                                UsageCounter.quota_type == quota_type,
                                UsageCounter.period_start == period_start,
                            )
                        )
                    ).one()
        return CounterSnapshot(
            user_id=user_id,
            quota_type=quota_type,
            usage_count=int(row.usage_count or 0),
            period_start=period_start,
            period_end=period_end,
            limit_value=row.limit_value,
        )

    async def increment_and_check(
        self,
        user_id: str,
        quota_type: str,
        *,
        amount: int,
        limit: int,
        now: datetime,
    ) -> IncrementOutcome:
        # Single-statement upsert; the database serializes concurrent increments per row.
        require_user_id(user_id)
        period_start, period_end = period_bounds(now)
        async with store_guard(_STORE, "increment_and_check"):
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = dialect_insert(session, UsageCounter).values(
                        user_id=user_id,
                        quota_type=quota_type,
                        period_start=period_start,
                        period_end=period_end,
                        usage_count=amount,
                        limit_value=limit,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[
                            UsageCounter.user_id,
                            UsageCounter.quota_type,
                            UsageCounter.period_start,
                        ],
                        set_={
                            "usage_count": UsageCounter.usage_count + stmt.excluded.usage_count,
                            "limit_value": stmt.excluded.limit_value,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    ).returning(UsageCounter.usage_count)
                    new_count = int((await session.execute(stmt)).scalar_one())

        exceeded = not is_unlimited(limit) and new_count > limit
        return IncrementOutcome(
            new_count=new_count,
            limit=limit,
            remaining=remaining_for(limit, new_count),
            quota_exceeded=exceeded,
            period_start=period_start,
            period_end=period_end,
        )

    async def reset_expired(self, *, now: datetime, batch_size: int = 1000) -> ResetCounts:
        # Archive finished periods, then zero them in bounded batches; reruns affect nothing.
        batch_size = max(1, int(batch_size))
        expired = and_(UsageCounter.period_end <= now, UsageCounter.usage_count > 0)
        users: set[str] = set()
        quotas_reset = 0
        async with store_guard(_STORE, "reset_expired"):
            async with self._session_factory() as session:
                async with session.begin():
                    archive = dialect_insert(session, UsageHistory).from_select(
                        [
                            UsageHistory.user_id,
                            UsageHistory.quota_type,
                            UsageHistory.period_start,
                            UsageHistory.period_end,
                            UsageHistory.usage_count,
                            UsageHistory.limit_value,
                            UsageHistory.archived_at,
                        ],
                        select(
                            UsageCounter.user_id,
                            UsageCounter.quota_type,
                            UsageCounter.period_start,
                            UsageCounter.period_end,
                            UsageCounter.usage_count,
                            UsageCounter.limit_value,
                            UsageCounter.updated_at,
                        ).where(expired),
                    )
                    archive = archive.on_conflict_do_update(
                        index_elements=[
                            UsageHistory.user_id,
                            UsageHistory.quota_type,
                            UsageHistory.period_start,
                        ],
                        set_={
                            "usage_count": archive.excluded.usage_count,
                            "limit_value": archive.excluded.limit_value,
                        },
                    )
                    await session.execute(archive)

                    key = tuple_(UsageCounter.user_id, UsageCounter.quota_type, UsageCounter.period_start)
                    while True:
                        batch = (
                            select(UsageCounter.user_id, UsageCounter.quota_type, UsageCounter.period_start)
                            .where(expired)
                            .limit(batch_size)
                        )
                        result = await session.execute(
                            update(UsageCounter)
                            .where(key.in_(batch))
                            .values(usage_count=0, updated_at=now)
                            .returning(UsageCounter.user_id)
                            .execution_options(synchronize_session=False)
                        )
                        reset_users = list(result.scalars().all())
                        if not reset_users:
                            break
                        users.update(reset_users)
                        quotas_reset += len(reset_users)
        return ResetCounts(users_reset=len(users), quotas_reset=quotas_reset)

    async def list_daily_usage(self, user_id: str, *, since: datetime) -> list[DailyUsage]:
        # Merge archived history with live counters; a period seen in both keeps the larger count.
        require_user_id(user_id)
        merged: dict[tuple[str, datetime], DailyUsage] = {}
        async with store_guard(_STORE, "list_daily_usage"):
            async with self._session_factory() as session:
                history = (
                    await session.execute(
                        select(UsageHistory).where(
                            UsageHistory.user_id == user_id,
                            UsageHistory.period_start >= since,
                        )
                    )
                ).scalars().all()
                live = (
                    await session.execute(
                        select(UsageCounter).where(
                            UsageCounter.user_id == user_id,
                            UsageCounter.period_start >= since,
                            or_(UsageCounter.usage_count > 0, UsageCounter.limit_value.is_not(None)),
                        )
                    )
                ).scalars().all()
        for row in [*history, *live]:
            key = (row.quota_type, row.period_start)
            current = merged.get(key)
            if current is None or row.usage_count > current.usage_count:
                merged[key] = DailyUsage(
                    quota_type=row.quota_type,
                    period_start=row.period_start,
                    usage_count=int(row.usage_count or 0),
                    limit_value=row.limit_value,
                )
        return sorted(merged.values(), key=lambda item: (item.quota_type, item.period_start))
