from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any

import httpx

from reglens.core.config import get_settings
from reglens.services.upgrade_prompts import PromptView


logger = logging.getLogger(__name__)

EVENT_PROMPT_CREATED = "upgrade_prompt.created"


def sign_payload(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact bytes sent so receivers can verify without re-serializing.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class PromptNotifier:
    """Posts signed upgrade-prompt events to the configured webhook."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        # Transport injection lets tests capture deliveries without a network.
        self._transport = transport

    async def prompt_created(self, prompt: PromptView) -> bool:
        settings = get_settings()
        if not settings.prompt_webhook_enabled:
            return False
        if not settings.prompt_webhook_url or not settings.prompt_webhook_secret:
            logger.warning("prompt_webhook_missing_config")
            return False

        payload: dict[str, Any] = {
            "event_type": EVENT_PROMPT_CREATED,
            "prompt_id": prompt.id,
            "user_id": prompt.user_id,
            "quota_type": prompt.quota_type,
            "current_tier": prompt.current_tier,
            "suggested_tier": prompt.suggested_tier,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Reglens-Signature": sign_payload(settings.prompt_webhook_secret, body),
            "X-Reglens-Event": EVENT_PROMPT_CREATED,
        }
        timeout = settings.prompt_webhook_timeout_ms / 1000.0
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(settings.prompt_webhook_url, content=body, headers=headers)
        response.raise_for_status()
        logger.info("prompt_webhook_sent prompt_id=%s status=%s", prompt.id, response.status_code)
        return True
