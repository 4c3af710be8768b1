"""quota engine and search cache tables

Revision ID: 0001_quota_engine
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_quota_engine"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_PROMPT = "dismissed_at IS NULL AND converted_at IS NULL"


def upgrade() -> None:
    # Hosted-auth user mirror; tier drives every quota limit.
    op.create_table(
        "user_profiles",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("tier", sa.String(), server_default=sa.text("'free'"), nullable=False),
        sa.Column("subscription_status", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # One counter per user, quota type and UTC day; mutated only by the atomic upsert and the reset.
    op.create_table(
        "usage_counters",
        sa.Column("user_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("quota_type", sa.String(), primary_key=True, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True, nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("usage_count >= 0", name="ck_usage_counters_non_negative"),
    )
    op.create_index("ix_usage_counters_period_end", "usage_counters", ["period_end"], unique=False)

    # Daily totals archived before counters are zeroed.
    op.create_table(
        "usage_history",
        sa.Column("user_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("quota_type", sa.String(), primary_key=True, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), primary_key=True, nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_count", sa.Integer(), nullable=False),
        sa.Column("limit_value", sa.Integer(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_usage_history_user_period",
        "usage_history",
        ["user_id", "period_start"],
        unique=False,
    )

    op.create_table(
        "upgrade_prompts",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("prompt_type", sa.String(), server_default=sa.text("'quota_exceeded'"), nullable=False),
        sa.Column("quota_type", sa.String(), nullable=False),
        sa.Column("current_tier", sa.String(), nullable=False),
        sa.Column("suggested_tier", sa.String(), nullable=False),
        sa.Column("shown_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
    )
    op.create_index("ix_upgrade_prompts_user_shown", "upgrade_prompts", ["user_id", "shown_at"], unique=False)
    # At most one active prompt per user and quota type, even under concurrent creators.
    op.create_index(
        "uq_upgrade_prompts_active",
        "upgrade_prompts",
        ["user_id", "quota_type"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_PROMPT),
    )

    op.create_table(
        "quota_reset_log",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("reset_date", sa.String(), nullable=False),
        sa.Column("users_reset", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("quotas_reset", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("execution_time_ms", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), server_default=sa.text("'scheduled'"), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_quota_reset_log_created_at", "quota_reset_log", ["created_at"], unique=False)

    # Content-addressed cache of search results, shared across users.
    op.create_table(
        "search_cache",
        sa.Column("query_hash", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("filters_json", postgresql.JSONB(), nullable=True),
        sa.Column("results_json", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hit_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    )
    op.create_index("ix_search_cache_expires_at", "search_cache", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_search_cache_expires_at", table_name="search_cache")
    op.drop_table("search_cache")
    op.drop_index("ix_quota_reset_log_created_at", table_name="quota_reset_log")
    op.drop_table("quota_reset_log")
    op.drop_index("uq_upgrade_prompts_active", table_name="upgrade_prompts")
    op.drop_index("ix_upgrade_prompts_user_shown", table_name="upgrade_prompts")
    op.drop_table("upgrade_prompts")
    op.drop_index("ix_usage_history_user_period", table_name="usage_history")
    op.drop_table("usage_history")
    op.drop_index("ix_usage_counters_period_end", table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_table("user_profiles")
