from __future__ import annotations

import argparse
import asyncio

from reglens.domain.tiers import TIERS
from reglens.persistence.db import dispose_engine, get_session_factory
from reglens.persistence.repos.user_profiles import UserProfileStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update a user's subscription tier")
    parser.add_argument("--user-id", required=True, help="Hosted auth user id")
    parser.add_argument("--tier", required=True, choices=TIERS, help="Subscription tier")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--status", default=None, help="Optional subscription status")
    return parser


async def _set_tier(args: argparse.Namespace) -> None:
    store = UserProfileStore(get_session_factory())
    try:
        profile = await store.upsert_profile(
            args.user_id,
            tier=args.tier,
            email=args.email,
            subscription_status=args.status,
        )
    finally:
        await dispose_engine()
    print(f"user_id={profile.id} tier={profile.tier}")


if __name__ == "__main__":
    asyncio.run(_set_tier(_build_parser().parse_args()))
