"""Dramatiq actors for background receipt extraction.

Extraction runs out of the request path: the upload endpoint sends the
``receipts/extract-data-from-pdf-and-save-to-database`` event and the
trigger adapter (``receipt_scanner.core.events``) enqueues one
``extract_receipt`` message.  A worker started with::

    python -m dramatiq receipt_scanner.worker --processes 1 --threads 4

picks the message up and runs the extraction pipeline.

Retries are driven by the exception the pipeline raises: only errors
flagged ``retryable`` are retried, with exponential backoff, up to
``EXTRACTION_MAX_RETRIES``.  The dramatiq message id is stable across
retries and is used as the pipeline's job key, so a retry resumes after
the last completed durable step.

The broker URL defaults to ``REDIS_URL``; it can be overridden with
``DRAMATIQ_BROKER_URL``.  Under ``ENVIRONMENT=test`` an in-memory
``StubBroker`` is used instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import dramatiq
import redis
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, CurrentMessage, Retries, ShutdownNotifications, TimeLimit
from dramatiq.results import Results
from dramatiq.results.backends import RedisBackend, StubBackend

from receipt_scanner.core.config import is_test_environment, settings
from receipt_scanner.core.database import get_worker_session_factory
from receipt_scanner.core.observability import sentry_breadcrumb
from receipt_scanner.models.schemas import ExtractionJobInput, JobResult
from receipt_scanner.services.extraction_pipeline import ExtractionPipeline
from receipt_scanner.services.inference_client import InferenceClient
from receipt_scanner.services.metering_service import MeteringClient
from receipt_scanner.services.receipt_store import ReceiptStore
from receipt_scanner.services.step_store import InMemoryStepStore, RedisStepStore


logger = logging.getLogger(__name__)


def _has_mw(broker: dramatiq.Broker, mw_cls: type) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def _configure_broker() -> dramatiq.Broker:
    if is_test_environment():
        stub = StubBroker()
        stub.add_middleware(CurrentMessage())
        stub.add_middleware(Results(backend=StubBackend()))
        dramatiq.set_broker(stub)
        return stub

    broker_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    logger.info("Configuring dramatiq with broker %s", broker_url)
    redis_broker = RedisBroker(url=broker_url)
    if not _has_mw(redis_broker, CurrentMessage):
        redis_broker.add_middleware(CurrentMessage())
    if not _has_mw(redis_broker, Results):
        redis_broker.add_middleware(Results(backend=RedisBackend(url=broker_url)))
    if not _has_mw(redis_broker, AgeLimit):
        redis_broker.add_middleware(AgeLimit())
    if not _has_mw(redis_broker, TimeLimit):
        redis_broker.add_middleware(TimeLimit())
    if not _has_mw(redis_broker, ShutdownNotifications):
        redis_broker.add_middleware(ShutdownNotifications())
    if not _has_mw(redis_broker, Retries):
        redis_broker.add_middleware(
            Retries(
                max_retries=settings.EXTRACTION_MAX_RETRIES,
                min_backoff=settings.EXTRACTION_MIN_BACKOFF_MS,
                max_backoff=settings.EXTRACTION_MAX_BACKOFF_MS,
            )
        )
    dramatiq.set_broker(redis_broker)
    return redis_broker


# Export the broker for the dramatiq CLI
broker = _configure_broker()


# Lightweight Redis publisher for job completion events
_redis_pub: Optional[redis.Redis] = None


def _get_redis_pub() -> redis.Redis:
    global _redis_pub
    if _redis_pub is None:
        _redis_pub = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_pub


def _publish_event(owner_id: Optional[str], receipt_id: str, payload: Dict[str, Any]) -> None:
    """Publish a job completion payload on the owner and receipt channels."""
    body = json.dumps(payload)
    channels = [f"receipts:receipt:{receipt_id}"]
    if owner_id:
        channels.insert(0, f"receipts:user:{owner_id}")
    try:
        pub = _get_redis_pub()
        for channel in channels:
            pub.publish(channel, body)
    except redis.RedisError as exc:
        logger.warning("[tasks] could not publish completion for receipt=%s: %s", receipt_id, exc)


def build_pipeline() -> ExtractionPipeline:
    """Wire a pipeline with fresh clients; called inside each job's event loop."""
    steps = InMemoryStepStore() if is_test_environment() else RedisStepStore()
    return ExtractionPipeline(
        inference=InferenceClient(),
        store=ReceiptStore(get_worker_session_factory()),
        metering=MeteringClient(),
        steps=steps,
    )


async def _run_job(job: ExtractionJobInput, job_key: Optional[str], final_attempt: bool) -> JobResult:
    pipeline = build_pipeline()
    try:
        return await pipeline.run(job, job_key=job_key, final_attempt=final_attempt)
    finally:
        await pipeline.aclose()


def _should_retry(retries: int, exc: Exception) -> bool:
    return retries < settings.EXTRACTION_MAX_RETRIES and bool(getattr(exc, "retryable", False))


@dramatiq.actor(
    queue_name="receipts",
    retry_when=_should_retry,
    min_backoff=settings.EXTRACTION_MIN_BACKOFF_MS,
    max_backoff=settings.EXTRACTION_MAX_BACKOFF_MS,
    time_limit=int((settings.EXTRACTION_JOB_TIMEOUT_SECONDS + 60) * 1000),
    store_results=True,
)
def extract_receipt(document_url: str, receipt_id: str, file_display_name: Optional[str] = None) -> Dict[str, Any]:
    """Extract one uploaded receipt and return ``{receiptId, status}``."""
    job = ExtractionJobInput(
        document_url=document_url,
        receipt_id=receipt_id,
        file_display_name=file_display_name,
    )
    message = CurrentMessage.get_current_message()
    if message is not None:
        job_key: Optional[str] = message.message_id
        retries = int(message.options.get("retries", 0) or 0)
        final_attempt = retries >= settings.EXTRACTION_MAX_RETRIES
    else:
        job_key, retries, final_attempt = None, 0, True

    sentry_breadcrumb(
        category="tasks",
        message="extract_receipt.start",
        data={"receipt_id": receipt_id, "retries": retries},
    )
    result = asyncio.run(_run_job(job, job_key, final_attempt))
    event = result.as_event()
    _publish_event(result.owner_id, result.receipt_id, event)
    logger.info("[tasks] extract_receipt finished receipt=%s status=%s", receipt_id, result.status)
    return event


__all__ = ["broker", "build_pipeline", "extract_receipt"]
