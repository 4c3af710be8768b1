from __future__ import annotations

import logging

import httpx

from reglens.core.config import get_settings
from reglens.core.errors import EmbeddingServiceError
from reglens.services.resilience import retry_async


logger = logging.getLogger(__name__)


class EmbeddingClient:
    """HTTP client for the query embedding microservice."""

    def __init__(self, client: httpx.AsyncClient | None = None, *, base_url: str | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._base_url = (base_url or self._settings.embedding_service_url).rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def embed(self, text: str) -> list[float]:
        data = await self._post("/api/embed", {"text": text})
        embedding = data.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingServiceError("Embedding service returned no embedding")
        return [float(value) for value in embedding]

    async def health_check(self) -> bool:
        try:
            response = await self._get_client().get(f"{self._base_url}/health")
        except httpx.HTTPError as exc:
            logger.warning("embedding_health_check_failed", exc_info=exc)
            return False
        return response.is_success

    async def _post(self, path: str, payload: dict) -> dict:
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(f"{self._base_url}{path}", json=payload)
            response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, name="embedding")
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.warning("embedding_request_failed path=%s", path, exc_info=exc)
            raise EmbeddingServiceError("Failed to generate embedding for query") from exc
        return response.json()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
