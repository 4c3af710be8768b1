from __future__ import annotations

from typing import Any

from reglens.core.errors import StoreUnavailableError
from reglens.services.search import SearchOptions
from reglens.services.search_cache import SearchResultCache


class FakeEmbeddings:
    def __init__(self, *, healthy: bool = True) -> None:
        self.calls: list[str] = []
        self.healthy = healthy
        self.closed = False

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return [0.1, 0.2, 0.3]

    async def aclose(self) -> None:
        self.closed = True

    async def health_check(self) -> bool:
        return self.healthy


class FakeSearchBackend:
    # Returns more documents than any tier may see so clamping is observable.
    def __init__(self, documents: int = 120) -> None:
        self.documents = documents
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def search(
        self,
        embedding: list[float],
        *,
        match_threshold: float,
        match_count: int,
        options: SearchOptions,
    ) -> list[dict[str, Any]]:
        self.calls.append({"match_threshold": match_threshold, "match_count": match_count})
        return [
            {"id": f"doc-{index}", "title": f"Regulation {index}", "similarity": 0.9}
            for index in range(self.documents)
        ]

    async def aclose(self) -> None:
        self.closed = True


class UnavailableCache(SearchResultCache):
    async def get(self, query, filters=None):  # type: ignore[override]
        raise StoreUnavailableError("search_cache unavailable during get")

    async def set(self, query, results, filters=None, ttl_seconds=None):  # type: ignore[override]
        raise StoreUnavailableError("search_cache unavailable during set")
