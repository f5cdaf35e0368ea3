from __future__ import annotations

"""Server-Sent Events (SSE) endpoints.

Exposes a receipt updates stream backed by Redis pub/sub. The stream
subscribes to the per-owner channel the extraction worker publishes job
completions on: ``receipts:user:{owner_id}``.

Browser ``EventSource`` cannot attach an ``Authorization`` header, so the
endpoint also accepts the Clerk JWT as a ``?token=`` query parameter.
"""

import asyncio
import json
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette.responses import StreamingResponse

from receipt_scanner.api.dependencies import get_redis_client
from receipt_scanner.core.security import subject_from_token

router = APIRouter(prefix="/events", tags=["events"])

KEEPALIVE_SECONDS = 15.0


def user_channel(owner_id: str) -> str:
    return f"receipts:user:{owner_id}"


def format_sse(data) -> bytes:
    """Frame a pub/sub payload as a ``receipt_update`` SSE event."""
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="ignore")
    try:
        json.loads(data)
        payload = data
    except (TypeError, ValueError):
        payload = json.dumps({"raw": data})
    return f"event: receipt_update\ndata: {payload}\n\n".encode("utf-8")


async def _receipt_event_stream(owner_id: str, redis_client, request: Request) -> AsyncIterator[bytes]:
    """Yield events from Redis pub/sub as SSE frames."""
    pubsub = redis_client.pubsub()
    channel = user_channel(owner_id)
    await pubsub.subscribe(channel)
    try:
        yield b": connected\n\n"
        while not await request.is_disconnected():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=KEEPALIVE_SECONDS)
            if message and message.get("type") == "message":
                yield format_sse(message.get("data"))
            else:
                yield b": keep-alive\n\n"
                await asyncio.sleep(0)
    finally:
        try:
            await pubsub.unsubscribe(channel)
        finally:
            await pubsub.aclose()


@router.get("/receipts/stream")
async def receipts_stream(
    request: Request,
    token: Optional[str] = Query(None),
    redis=Depends(get_redis_client),
):
    """SSE stream of extraction completions (``{receiptId, status}``) for the caller."""
    auth_header = request.headers.get("Authorization")
    bearer = auth_header.split(" ", 1)[1] if auth_header and auth_header.startswith("Bearer ") else None
    owner_id = subject_from_token(bearer or token)
    return StreamingResponse(
        _receipt_event_stream(owner_id, redis, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
