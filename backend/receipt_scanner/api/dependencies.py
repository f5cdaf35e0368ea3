"""Common dependencies for FastAPI routes.

Routers depend on these providers rather than constructing services
themselves so tests can swap any of them through
``app.dependency_overrides``.  Authentication lives in
``receipt_scanner.core.security``; ``get_current_subject`` is re-exported
here for convenience.
"""

from __future__ import annotations

from functools import lru_cache
from typing import AsyncGenerator

from redis import asyncio as aioredis

from receipt_scanner.core.config import settings
from receipt_scanner.core.database import AsyncSessionLocal
from receipt_scanner.core.security import get_current_subject
from receipt_scanner.services.metering_service import MeteringClient
from receipt_scanner.services.receipt_store import ReceiptStore
from receipt_scanner.services.storage_service import StorageService


# -----------------------------------------------------------------------------
# Shared resources

_redis_client = None  # type: ignore


@lru_cache(maxsize=1)
def get_store() -> ReceiptStore:
    return ReceiptStore(AsyncSessionLocal)


@lru_cache(maxsize=1)
def get_storage() -> StorageService:
    return StorageService()


async def get_metering() -> AsyncGenerator[MeteringClient, None]:
    """Per-request metering client, closed when the request finishes."""
    client = MeteringClient()
    try:
        yield client
    finally:
        await client.aclose()


async def get_redis_client() -> aioredis.Redis:
    """Return a singleton async Redis client using ``REDIS_URL``."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


__all__ = ["get_current_subject", "get_metering", "get_redis_client", "get_storage", "get_store"]
