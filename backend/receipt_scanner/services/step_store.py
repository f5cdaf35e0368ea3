"""Durable step results for extraction jobs.

A job is a sequence of named steps.  Once a step succeeds its JSON
result is stored under ``(job_key, step)`` so that a retried job (same
dramatiq message, hence same job key) picks the result up instead of
repeating the side effect: the document is not downloaded or uploaded
again, the model is not asked twice, and usage is never metered twice
for one job.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol

from redis import asyncio as aioredis

from receipt_scanner.core.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "receipt-steps"


def step_key(job_key: str, step: str) -> str:
    return f"{KEY_PREFIX}:{job_key}:{step}"


class StepStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...


class InMemoryStepStore:
    """Process-local store; results do not survive a restart."""

    def __init__(self) -> None:
        self._values: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self._values.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._values[key] = json.dumps(value)

    def __contains__(self, key: str) -> bool:
        return key in self._values


class RedisStepStore:
    """Redis-backed store with a TTL on every step result."""

    def __init__(self, client: Optional[aioredis.Redis] = None, *, ttl_seconds: Optional[int] = None) -> None:
        self._client = client or aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        self._owns_client = client is None
        self.ttl_seconds = ttl_seconds or settings.STEP_CACHE_TTL_SECONDS

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("[steps] discarding undecodable step result key=%s", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        await self._client.set(key, json.dumps(value), ex=self.ttl_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["StepStore", "InMemoryStepStore", "RedisStepStore", "step_key"]
