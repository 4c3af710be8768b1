from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import Any, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reglens.domain.models import SearchCacheEntry
from reglens.persistence.guards import dialect_insert, store_guard


logger = logging.getLogger(__name__)

_STORE = "search_cache"


def normalize_query(query: str) -> str:
    # Queries differing only in case or spacing share one entry.
    return " ".join(str(query).split()).casefold()


def canonical_filters(value: Any) -> Any:
    """Order-independent form of a filter payload.

    None values are dropped, mapping keys are sorted recursively and lists of
    scalars are treated as sets and sorted, so filter insertion order never changes
    the cache key.
    """
    if isinstance(value, dict):
        return {
            str(key): canonical_filters(item)
            for key, item in sorted(value.items(), key=lambda pair: str(pair[0]))
            if item is not None
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [canonical_filters(item) for item in value if item is not None]
        if all(isinstance(item, (str, int, float, bool)) for item in items):
            return sorted(items, key=lambda item: (type(item).__name__, item))
        return items
    return value


def cache_key(query: str, filters: dict[str, Any] | None = None) -> str:
    payload = {"query": normalize_query(query), "filters": canonical_filters(filters or {})}
    # Match the canonical JSON encoding used for request fingerprints.
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SearchResultCache:
    """Content-addressed, TTL-bounded cache of search results shared by all users."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_ttl_s: int = 3600,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        if default_ttl_s <= 0:
            raise ValueError("default_ttl_s must be positive")
        self._session_factory = session_factory
        self._default_ttl_s = default_ttl_s
        self._time_provider = time_provider or _utc_now

    async def get(self, query: str, filters: dict[str, Any] | None = None) -> Any | None:
        # Lookup and hit counting happen in one conditional update; expired rows never match.
        query_hash = cache_key(query, filters)
        now = self._time_provider()
        async with store_guard(_STORE, "get"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(SearchCacheEntry)
                        .where(
                            SearchCacheEntry.query_hash == query_hash,
                            SearchCacheEntry.expires_at > now,
                        )
                        .values(hit_count=SearchCacheEntry.hit_count + 1)
                        .returning(SearchCacheEntry.results_json)
                        .execution_options(synchronize_session=False)
                    )
                    results = result.scalar_one_or_none()
        logger.debug("search_cache_lookup hash=%s hit=%s", query_hash[:12], results is not None)
        return results

    async def set(
        self,
        query: str,
        results: Any,
        filters: dict[str, Any] | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        ttl = self._default_ttl_s if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        query_hash = cache_key(query, filters)
        now = self._time_provider()
        expires_at = now + timedelta(seconds=ttl)
        async with store_guard(_STORE, "set"):
            async with self._session_factory() as session:
                async with session.begin():
                    stmt = dialect_insert(session, SearchCacheEntry).values(
                        query_hash=query_hash,
                        query=query,
                        filters_json=canonical_filters(filters or {}),
                        results_json=results,
                        created_at=now,
                        expires_at=expires_at,
                        hit_count=0,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[SearchCacheEntry.query_hash],
                        set_={
                            "query": stmt.excluded.query,
                            "filters_json": stmt.excluded.filters_json,
                            "results_json": stmt.excluded.results_json,
                            "created_at": stmt.excluded.created_at,
                            "expires_at": stmt.excluded.expires_at,
                            "hit_count": 0,
                        },
                    )
                    await session.execute(stmt)
        return query_hash

    async def invalidate(self, query: str, filters: dict[str, Any] | None = None) -> bool:
        query_hash = cache_key(query, filters)
        async with store_guard(_STORE, "invalidate"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(SearchCacheEntry).where(SearchCacheEntry.query_hash == query_hash)
                    )
        return (result.rowcount or 0) > 0

    async def clear_expired(self) -> int:
        now = self._time_provider()
        async with store_guard(_STORE, "clear_expired"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(SearchCacheEntry).where(SearchCacheEntry.expires_at <= now)
                    )
        removed = int(result.rowcount or 0)
        logger.info("search_cache_cleared_expired removed=%s", removed)
        return removed

    async def get_stats(self) -> dict[str, Any]:
        async with store_guard(_STORE, "get_stats"):
            async with self._session_factory() as session:
                row = (
                    await session.execute(
                        select(
                            func.count(SearchCacheEntry.query_hash),
                            func.coalesce(func.sum(SearchCacheEntry.hit_count), 0),
                        )
                    )
                ).one()
        total_entries = int(row[0] or 0)
        total_hits = int(row[1] or 0)
        return {
            "total_entries": total_entries,
            "total_hits": total_hits,
            "avg_hit_count": round(total_hits / total_entries, 2) if total_entries else 0.0,
        }

    async def get_popular_queries(self, limit: int = 10) -> list[dict[str, Any]]:
        now = self._time_provider()
        async with store_guard(_STORE, "get_popular_queries"):
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(SearchCacheEntry.query, SearchCacheEntry.hit_count)
                        .where(SearchCacheEntry.expires_at > now)
                        .order_by(SearchCacheEntry.hit_count.desc(), SearchCacheEntry.query)
                        .limit(max(1, int(limit)))
                    )
                ).all()
        return [{"query": row.query, "hit_count": int(row.hit_count)} for row in rows]
