from __future__ import annotations

import asyncio

from reglens.core.config import get_settings
from reglens.persistence.db import dispose_engine, get_session_factory
from reglens.services.search_cache import SearchResultCache


async def prune() -> None:
    cache = SearchResultCache(get_session_factory(), default_ttl_s=get_settings().search_cache_ttl_s)
    try:
        removed = await cache.clear_expired()
    finally:
        await dispose_engine()
    print(f"pruned_search_cache={removed}")


if __name__ == "__main__":
    asyncio.run(prune())
