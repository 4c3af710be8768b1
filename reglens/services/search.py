from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import time
from typing import Any, Protocol

import httpx

from reglens.core.config import get_settings
from reglens.core.errors import SearchBackendError, StoreUnavailableError
from reglens.domain.tiers import get_policy
from reglens.services.embeddings import EmbeddingClient
from reglens.services.resilience import retry_async
from reglens.services.search_cache import SearchResultCache


logger = logging.getLogger(__name__)


@dataclass
class SearchOptions:
    limit: int | None = None
    offset: int = 0
    domains: list[str] = field(default_factory=list)
    document_types: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    date_from: str | None = None
    date_to: str | None = None
    min_relevance: float | None = None

    def cache_filters(self, limit: int, min_relevance: float) -> dict[str, Any]:
        # Everything that shapes the result set participates in the cache key.
        return {
            "limit": limit,
            "offset": self.offset,
            "domains": self.domains,
            "document_types": self.document_types,
            "sources": self.sources,
            "date_from": self.date_from,
            "date_to": self.date_to,
            "min_relevance": min_relevance,
        }


class DocumentSearchBackend(Protocol):
    async def search(
        self,
        embedding: list[float],
        *,
        match_threshold: float,
        match_count: int,
        options: SearchOptions,
    ) -> list[dict[str, Any]]:
        ...

    async def aclose(self) -> None:
        ...


class HttpDocumentSearch:
    """Calls the hosted search_documents_semantic RPC over its REST gateway."""

    def __init__(self, client: httpx.AsyncClient | None = None, *, base_url: str | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._base_url = (base_url or self._settings.search_service_url).rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._settings.search_service_api_key
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _filter_params(options: SearchOptions) -> list[tuple[str, str]]:
        # Row filters are applied by the gateway on the RPC result set.
        params: list[tuple[str, str]] = []
        if options.domains:
            params.append(("domain", f"in.({','.join(options.domains)})"))
        if options.document_types:
            params.append(("document_type", f"in.({','.join(options.document_types)})"))
        if options.sources:
            params.append(("source", f"in.({','.join(options.sources)})"))
        if options.date_from:
            params.append(("published_date", f"gte.{options.date_from}"))
        if options.date_to:
            params.append(("published_date", f"lte.{options.date_to}"))
        if options.offset:
            params.append(("offset", str(options.offset)))
        return params

    async def search(
        self,
        embedding: list[float],
        *,
        match_threshold: float,
        match_count: int,
        options: SearchOptions,
    ) -> list[dict[str, Any]]:
        client = self._get_client()
        body = {
            "query_embedding": embedding,
            "match_threshold": match_threshold,
            "match_count": match_count,
        }

        async def _call() -> httpx.Response:
            response = await client.post(
                f"{self._base_url}/rpc/search_documents_semantic",
                json=body,
                params=self._filter_params(options),
                headers=self._headers(),
            )
            response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, name="document_search")
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning("document_search_failed", exc_info=exc)
            raise SearchBackendError("Failed to execute search") from exc
        data = response.json()
        if not isinstance(data, list):
            raise SearchBackendError("Search backend returned an unexpected payload")
        return data

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SearchService:
    def __init__(
        self,
        *,
        cache: SearchResultCache,
        embeddings: EmbeddingClient,
        backend: DocumentSearchBackend,
    ) -> None:
        self._cache = cache
        self._embeddings = embeddings
        self._backend = backend

    async def semantic_search(
        self,
        query: str,
        options: SearchOptions | None = None,
        *,
        tier: str,
    ) -> dict[str, Any]:
        settings = get_settings()
        options = options or SearchOptions()
        started = time.monotonic()

        filters = self.effective_filters(options, tier=tier)
        limit = filters["limit"]
        min_relevance = filters["min_relevance"]

        cached = await self._cache_get(query, filters)
        if cached is not None:
            return {
                **cached,
                # Cache entries are shared across callers; echo this caller's query text.
                "query": query,
                "processing_time_ms": int((time.monotonic() - started) * 1000),
                "cached": True,
            }

        embedding = await self._embeddings.embed(query)
        results = await self._backend.search(
            embedding,
            match_threshold=min_relevance,
            match_count=limit,
            options=options,
        )
        payload = {"results": results[:limit], "total": len(results[:limit]), "query": query}
        await self._cache_set(query, payload, filters, settings.search_cache_ttl_s)
        return {
            **payload,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "cached": False,
        }

    async def embeddings_healthy(self) -> bool:
        return await self._embeddings.health_check()

    async def aclose(self) -> None:
        try:
            await self._embeddings.aclose()
        finally:
            await self._backend.aclose()

    @staticmethod
    def effective_filters(options: SearchOptions, *, tier: str) -> dict[str, Any]:
        # Result size is capped by the caller's tier; the capped options form the cache key.
        settings = get_settings()
        requested = options.limit or settings.search_default_limit
        limit = max(1, min(int(requested), get_policy(tier).results_per_search))
        min_relevance = (
            options.min_relevance if options.min_relevance is not None else settings.search_min_relevance
        )
        return options.cache_filters(limit, min_relevance)

    async def _cache_get(self, query: str, filters: dict[str, Any]) -> dict[str, Any] | None:
        # A slow or unavailable cache is a miss, never a failed search.
        timeout = get_settings().search_cache_timeout_ms / 1000.0
        try:
            return await asyncio.wait_for(self._cache.get(query, filters), timeout=timeout)
        except (StoreUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("search_cache_get_failed error=%s", type(exc).__name__)
            return None

    async def _cache_set(self, query: str, payload: dict[str, Any], filters: dict[str, Any], ttl: int) -> None:
        timeout = get_settings().search_cache_timeout_ms / 1000.0
        try:
            await asyncio.wait_for(self._cache.set(query, payload, filters, ttl), timeout=timeout)
        except (StoreUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("search_cache_set_failed error=%s", type(exc).__name__)
