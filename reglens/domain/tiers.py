"""Subscription tier policies and quota limits."""

from __future__ import annotations

from dataclasses import dataclass

from reglens.core.errors import InvalidQuotaInputError


TIER_FREE = "free"
TIER_PRO = "pro"
TIER_ENTERPRISE = "enterprise"

TIERS = (TIER_FREE, TIER_PRO, TIER_ENTERPRISE)

QUOTA_SEARCH = "search"
QUOTA_EXPORT = "export"
QUOTA_API_CALL = "api_call"

QUOTA_TYPES = (QUOTA_SEARCH, QUOTA_EXPORT, QUOTA_API_CALL)

UNLIMITED = -1


@dataclass(frozen=True)
class TierPolicy:
    tier: str
    searches_per_day: int  # -1 = unlimited
    results_per_search: int
    exports_per_day: int  # -1 = unlimited
    api_calls_per_day: int  # -1 = unlimited
    advanced_filters: bool
    saved_searches: bool
    export_enabled: bool
    api_access: bool
    priority_support: bool
    custom_integrations: bool


FREE = TierPolicy(
    tier=TIER_FREE,
    searches_per_day=20,
    results_per_search=5,
    exports_per_day=0,
    api_calls_per_day=0,
    advanced_filters=False,
    saved_searches=False,
    export_enabled=False,
    api_access=False,
    priority_support=False,
    custom_integrations=False,
)

PRO = TierPolicy(
    tier=TIER_PRO,
    searches_per_day=500,
    results_per_search=50,
    exports_per_day=100,
    api_calls_per_day=0,
    advanced_filters=True,
    saved_searches=True,
    export_enabled=True,
    api_access=False,
    priority_support=False,
    custom_integrations=False,
)

ENTERPRISE = TierPolicy(
    tier=TIER_ENTERPRISE,
    searches_per_day=UNLIMITED,
    results_per_search=100,
    exports_per_day=UNLIMITED,
    api_calls_per_day=UNLIMITED,
    advanced_filters=True,
    saved_searches=True,
    export_enabled=True,
    api_access=True,
    priority_support=True,
    custom_integrations=True,
)

TIER_POLICIES: dict[str, TierPolicy] = {
    TIER_FREE: FREE,
    TIER_PRO: PRO,
    TIER_ENTERPRISE: ENTERPRISE,
}

_NEXT_TIER = {
    TIER_FREE: TIER_PRO,
    TIER_PRO: TIER_ENTERPRISE,
    TIER_ENTERPRISE: TIER_ENTERPRISE,
}


def normalize_tier(tier: str | None) -> str:
    """Map missing or unrecognized tiers to free."""
    if tier is None:
        return TIER_FREE
    cleaned = str(tier).strip().lower()
    return cleaned if cleaned in TIER_POLICIES else TIER_FREE


def get_policy(tier: str | None) -> TierPolicy:
    return TIER_POLICIES[normalize_tier(tier)]


def suggested_tier(tier: str | None) -> str:
    """Next tier up; enterprise is terminal and unknown tiers suggest pro."""
    if tier is None:
        return TIER_PRO
    return _NEXT_TIER.get(str(tier).strip().lower(), TIER_PRO)


def is_terminal_tier(tier: str | None) -> bool:
    return normalize_tier(tier) == TIER_ENTERPRISE


def validate_quota_type(quota_type: str) -> str:
    if quota_type not in QUOTA_TYPES:
        raise InvalidQuotaInputError(f"Unknown quota type: {quota_type!r}")
    return quota_type


def limit_for(policy: TierPolicy, quota_type: str) -> int:
    """Daily limit of a quota type under a policy; -1 means unlimited."""
    validate_quota_type(quota_type)
    if quota_type == QUOTA_SEARCH:
        return policy.searches_per_day
    if quota_type == QUOTA_EXPORT:
        return policy.exports_per_day
    return policy.api_calls_per_day


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED
