from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from reglens.core.config import get_settings


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, httpx.TimeoutException, httpx.NetworkError)


def is_transient(exc: Exception) -> bool:
    # Timeouts, dropped connections and upstream 5xx are worth another attempt; 4xx never are.
    if isinstance(exc, TransientException):
        return True
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None) if response is not None else None
    if status_code is None:
        status_code = getattr(exc, "status_code", None)
    return isinstance(status_code, int) and status_code >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_for(self, attempt: int) -> float:
        # Exponential from the base backoff, jittered so callers do not retry in lockstep.
        base_s = self.backoff_ms / 1000.0
        return base_s * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    name: str = "external",
) -> Any:
    """Run an outbound call with a per-attempt timeout and bounded retries.

    The last failure is re-raised unchanged so callers can map it to their own
    error type.
    """
    active = policy or default_retry_policy()
    should_retry = retryable or is_transient
    attempts = max(active.max_attempts, 1)
    timeout_s = active.timeout_ms / 1000.0
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless another attempt is allowed
            if attempt == attempts or not should_retry(exc):
                raise
            logger.warning("external_call_retry name=%s attempt=%s error=%s", name, attempt, type(exc).__name__)
            await asyncio.sleep(active.delay_for(attempt))
