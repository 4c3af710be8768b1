from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from reglens.core.config import get_settings
from reglens.core.errors import InvalidQuotaInputError
from reglens.domain.tiers import (
    QUOTA_TYPES,
    get_policy,
    is_terminal_tier,
    is_unlimited,
    limit_for,
    suggested_tier,
    validate_quota_type,
)
from reglens.persistence.repos.usage_counters import (
    ResetCounts,
    UsageCounterStore,
    period_bounds,
    remaining_for,
)
from reglens.persistence.repos.user_profiles import UserProfileStore
from reglens.services.notifications import PromptNotifier
from reglens.services.upgrade_prompts import PromptView, UpgradePromptTracker


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaUsage:
    # Counter state for the current period as seen by this decision.
    usage_count: int
    limit_value: int
    remaining: int | None
    period_start: datetime
    period_end: datetime

    @property
    def is_unlimited(self) -> bool:
        return is_unlimited(self.limit_value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "usage_count": self.usage_count,
            "limit_value": self.limit_value,
            "remaining": self.remaining,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "is_unlimited": self.is_unlimited,
        }


@dataclass(frozen=True)
class QuotaCheckResult:
    # Allow/deny decision plus the data needed for headers, 429 bodies and prompts.
    allowed: bool
    quota_type: str
    current_tier: str
    usage: QuotaUsage
    quota_exceeded: bool
    show_upgrade_prompt: bool = False
    suggested_tier: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "quota_type": self.quota_type,
            "current_tier": self.current_tier,
            "usage": self.usage.to_dict(),
            "quota_exceeded": self.quota_exceeded,
            "show_upgrade_prompt": self.show_upgrade_prompt,
            "suggested_tier": self.suggested_tier,
        }


@dataclass(frozen=True)
class UsageStatistics:
    quota_type: str
    total_usage: int
    avg_daily_usage: float
    max_daily_usage: int
    days_at_limit: int
    current_tier: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "quota_type": self.quota_type,
            "total_usage": self.total_usage,
            "avg_daily_usage": self.avg_daily_usage,
            "max_daily_usage": self.max_daily_usage,
            "days_at_limit": self.days_at_limit,
            "current_tier": self.current_tier,
        }


@dataclass(frozen=True)
class DailyUsageEntry:
    date: str
    usage: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "usage": dict(self.usage)}


def _utc_now() -> datetime:
    # Use UTC for consistent quota period boundaries.
    return datetime.now(timezone.utc)


def _format_limit(value: int) -> str:
    return "unlimited" if is_unlimited(value) else str(value)


def _format_remaining(value: int | None) -> str:
    return "unlimited" if value is None else str(value)


def _validate_window(value: int, *, name: str = "window_days") -> None:
    max_days = get_settings().usage_statistics_max_days
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQuotaInputError(f"{name} must be an integer")
    if value < 1 or value > max_days:
        raise InvalidQuotaInputError(f"{name} must be between 1 and {max_days}")


def reset_in_seconds(result: QuotaCheckResult, now: datetime) -> int:
    return max(int((result.usage.period_end - now).total_seconds()), 0)


def quota_headers(result: QuotaCheckResult) -> dict[str, str]:
    # Render rate-limit style headers; reset is the epoch second of the next period.
    return {
        "X-RateLimit-Limit": _format_limit(result.usage.limit_value),
        "X-RateLimit-Remaining": _format_remaining(result.usage.remaining),
        "X-RateLimit-Reset": str(int(result.usage.period_end.timestamp())),
        "X-RateLimit-Unlimited": "true" if result.usage.is_unlimited else "false",
    }


class QuotaManager:
    """Per-user daily quota decisions on top of the usage counter store."""

    def __init__(
        self,
        *,
        store: UsageCounterStore,
        profiles: UserProfileStore,
        prompts: UpgradePromptTracker,
        notifier: PromptNotifier | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._prompts = prompts
        self._notifier = notifier
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now
        self._background: set[asyncio.Task[Any]] = set()

    def now(self) -> datetime:
        return self._time_provider()

    async def check_quota(self, user_id: str, quota_type: str) -> QuotaCheckResult:
        # Read-only decision: exceeded once usage has reached the limit.
        validate_quota_type(quota_type)
        tier = await self._profiles.get_tier(user_id)
        limit = limit_for(get_policy(tier), quota_type)
        snapshot = await self._store.get_usage(user_id, quota_type, now=self.now())
        exceeded = not is_unlimited(limit) and snapshot.usage_count >= limit
        usage = QuotaUsage(
            usage_count=snapshot.usage_count,
            limit_value=limit,
            remaining=remaining_for(limit, snapshot.usage_count),
            period_start=snapshot.period_start,
            period_end=snapshot.period_end,
        )
        return await self._result(user_id, quota_type, tier, usage, exceeded)

    async def increment_quota(self, user_id: str, quota_type: str, amount: int = 1) -> QuotaCheckResult:
        validate_quota_type(quota_type)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidQuotaInputError("amount must be an integer")
        if amount < 0:
            raise InvalidQuotaInputError("amount must not be negative")
        if amount == 0:
            return await self.check_quota(user_id, quota_type)

        tier = await self._profiles.get_tier(user_id)
        limit = limit_for(get_policy(tier), quota_type)
        outcome = await self._store.increment_and_check(
            user_id, quota_type, amount=amount, limit=limit, now=self.now()
        )
        usage = QuotaUsage(
            usage_count=outcome.new_count,
            limit_value=limit,
            remaining=outcome.remaining,
            period_start=outcome.period_start,
            period_end=outcome.period_end,
        )
        result = await self._result(user_id, quota_type, tier, usage, outcome.quota_exceeded)
        if result.quota_exceeded:
            logger.info(
                "quota_exceeded user_id=%s quota_type=%s usage=%s limit=%s",
                user_id,
                quota_type,
                outcome.new_count,
                limit,
            )
            if not is_terminal_tier(tier):
                self._spawn(self._create_prompt(user_id, quota_type, tier, usage))
        return result

    async def get_usage_statistics(self, user_id: str, window_days: int = 7) -> list[UsageStatistics]:
        _validate_window(window_days)
        tier = await self._profiles.get_tier(user_id)
        today_start, _ = period_bounds(self.now())
        since = today_start - timedelta(days=window_days - 1)
        rows = await self._store.list_daily_usage(user_id, since=since)

        stats: list[UsageStatistics] = []
        for quota_type in QUOTA_TYPES:
            daily = [row for row in rows if row.quota_type == quota_type]
            total = sum(row.usage_count for row in daily)
            at_limit = sum(
                1
                for row in daily
                if row.limit_value is not None
                and not is_unlimited(row.limit_value)
                and row.usage_count >= row.limit_value
            )
            stats.append(
                UsageStatistics(
                    quota_type=quota_type,
                    total_usage=total,
                    avg_daily_usage=round(total / window_days, 2),
                    max_daily_usage=max((row.usage_count for row in daily), default=0),
                    days_at_limit=at_limit,
                    current_tier=tier,
                )
            )
        return stats

    async def get_daily_usage(self, user_id: str, days: int = 7) -> list[DailyUsageEntry]:
        """Per-day usage for the last `days` UTC days, oldest first.

        Days without a counter row report zero for every quota type.
        """
        _validate_window(days, name="days")
        today_start, _ = period_bounds(self.now())
        since = today_start - timedelta(days=days - 1)
        rows = await self._store.list_daily_usage(user_id, since=since)

        by_day: dict[str, dict[str, int]] = {}
        for offset in range(days):
            day = (since + timedelta(days=offset)).date().isoformat()
            by_day[day] = {quota_type: 0 for quota_type in QUOTA_TYPES}
        for row in rows:
            day = row.period_start.astimezone(timezone.utc).date().isoformat()
            if day in by_day and row.quota_type in by_day[day]:
                by_day[day][row.quota_type] = row.usage_count
        return [DailyUsageEntry(date=day, usage=usage) for day, usage in by_day.items()]

    async def get_all_quota_status(self, user_id: str) -> dict[str, QuotaCheckResult]:
        return {quota_type: await self.check_quota(user_id, quota_type) for quota_type in QUOTA_TYPES}

    async def get_upgrade_prompts(self, user_id: str, *, include_dismissed: bool = False) -> list[PromptView]:
        return await self._prompts.list_prompts(user_id, include_dismissed=include_dismissed)

    async def dismiss_upgrade_prompt(self, user_id: str, prompt_id: str) -> PromptView:
        return await self._prompts.dismiss(prompt_id, user_id=user_id)

    async def mark_upgrade_prompt_converted(self, user_id: str, prompt_id: str) -> PromptView:
        return await self._prompts.mark_converted(prompt_id, user_id=user_id)

    async def reset_daily_quotas(self, *, batch_size: int | None = None) -> ResetCounts:
        size = batch_size or get_settings().quota_reset_batch_size
        return await self._store.reset_expired(now=self.now(), batch_size=size)

    async def wait_for_background_tasks(self) -> None:
        # Drain best-effort prompt work; used on shutdown and in tests.
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _result(
        self,
        user_id: str,
        quota_type: str,
        tier: str,
        usage: QuotaUsage,
        exceeded: bool,
    ) -> QuotaCheckResult:
        show = False
        suggested = None
        if exceeded:
            suggested = suggested_tier(tier)
            if not is_terminal_tier(tier):
                show = await self._should_show(user_id, quota_type)
        return QuotaCheckResult(
            allowed=not exceeded,
            quota_type=quota_type,
            current_tier=tier,
            usage=usage,
            quota_exceeded=exceeded,
            show_upgrade_prompt=show,
            suggested_tier=suggested,
        )

    async def _should_show(self, user_id: str, quota_type: str) -> bool:
        # Prompt visibility never changes the quota decision.
        try:
            return await self._prompts.should_show(user_id, quota_type)
        except Exception as exc:  # noqa: BLE001 - prompt lookups are best effort
            logger.warning("upgrade_prompt_lookup_failed user_id=%s quota_type=%s", user_id, quota_type, exc_info=exc)
            return False

    async def _create_prompt(self, user_id: str, quota_type: str, tier: str, usage: QuotaUsage) -> None:
        prompt = await self._prompts.maybe_create_prompt(
            user_id,
            quota_type,
            current_tier=tier,
            suggested_tier=suggested_tier(tier),
            metadata={"usage_count": usage.usage_count, "limit_value": usage.limit_value},
        )
        if prompt is not None and self._notifier is not None:
            await self._notifier.prompt_created(prompt)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("upgrade_prompt_background_failed", exc_info=exc)
