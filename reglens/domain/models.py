from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on PostgreSQL and SQLite alike."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        # SQLite stores naive text; keep every stored value in UTC so string comparisons hold.
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on PostgreSQL, plain JSON text elsewhere.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPk = BigInteger().with_variant(Integer(), "sqlite")

_ACTIVE_PROMPT_PREDICATE = "dismissed_at IS NULL AND converted_at IS NULL"


class Base(DeclarativeBase):
    pass


class UserProfile(Base):
    __tablename__ = "user_profiles"

    # Mirror of the hosted auth user id; tier drives every quota decision.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    tier: Mapped[str] = mapped_column(String, default="free", nullable=False)
    subscription_status: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        Index("ix_usage_counters_period_end", "period_end"),
        CheckConstraint("usage_count >= 0", name="ck_usage_counters_non_negative"),
    )

    # One counter per user, quota type and UTC day.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    quota_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    period_end: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Limit in force at the last increment; -1 for unlimited tiers.
    limit_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class UsageHistory(Base):
    __tablename__ = "usage_history"
    __table_args__ = (
        Index("ix_usage_history_user_period", "user_id", "period_start"),
    )

    # Daily totals archived by the reset job before counters are zeroed.
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    quota_type: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UtcDateTime, primary_key=True)
    period_end: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class UpgradePrompt(Base):
    __tablename__ = "upgrade_prompts"
    __table_args__ = (
        Index("ix_upgrade_prompts_user_shown", "user_id", "shown_at"),
        # At most one active prompt per user and quota type.
        Index(
            "uq_upgrade_prompts_active",
            "user_id",
            "quota_type",
            unique=True,
            postgresql_where=text(_ACTIVE_PROMPT_PREDICATE),
            sqlite_where=text(_ACTIVE_PROMPT_PREDICATE),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    prompt_type: Mapped[str] = mapped_column(String, default="quota_exceeded", nullable=False)
    quota_type: Mapped[str] = mapped_column(String, nullable=False)
    current_tier: Mapped[str] = mapped_column(String, nullable=False)
    suggested_tier: Mapped[str] = mapped_column(String, nullable=False)
    shown_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, nullable=False)
    dismissed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class QuotaResetLog(Base):
    __tablename__ = "quota_reset_log"
    __table_args__ = (
        Index("ix_quota_reset_log_created_at", "created_at"),
    )

    # Append-only record of every reset attempt, including failures.
    id: Mapped[int] = mapped_column(BigIntPk, primary_key=True, autoincrement=True)
    reset_date: Mapped[str] = mapped_column(String, nullable=False)
    users_reset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quotas_reset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    trigger: Mapped[str] = mapped_column(String, default="scheduled", nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, nullable=False)


class SearchCacheEntry(Base):
    __tablename__ = "search_cache"
    __table_args__ = (
        Index("ix_search_cache_expires_at", "expires_at"),
    )

    # Content-addressed by the normalized query + filter hash; global across users.
    query_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    filters_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    results_json: Mapped[Any] = mapped_column(JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime, nullable=False)
    hit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
