"""Receipt extraction pipeline.

One job turns an uploaded receipt document into a completed receipt
record::

    pending -> fetching -> uploading -> inferring -> normalizing
            -> persisting -> metering -> done

Any stage may end the job in ``failed``.  The external side effects are
run as durable steps: their results are stored in a ``StepStore`` under
the job key, so a retried job resumes after the last completed step
rather than downloading, uploading or asking the model again.
Normalisation is pure and is simply re-run.

Failure handling:

* Retryable errors (``ExtractionError.retryable``) are re-raised while
  retries remain so the execution layer can back off and try again; the
  record stays ``processing``.
* Non-retryable errors, the final attempt and the wall-clock timeout
  write ``failed`` with a reason and the failing stage.
* The wall-clock budget covers the stages up to and including
  persistence.  Metering runs after persistence committed, outside that
  budget, is retried a bounded number of times and never fails the job.
  Its step is keyed by receipt id rather than job key, so a redelivered
  trigger for the same receipt is not billed twice.

The pipeline holds no per-job state on the instance; every run keeps its
progress in a private ``_Run`` object, so one pipeline may serve
concurrent jobs.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import sentry_sdk

from receipt_scanner.core.config import settings
from receipt_scanner.core.exceptions import ExtractionError, MalformedOutputError, MeteringError
from receipt_scanner.core.observability import (
    sentry_breadcrumb,
    sentry_capture,
    sentry_metric_inc,
    sentry_set_tags,
)
from receipt_scanner.models.enums import PipelineStage
from receipt_scanner.models.schemas import ExtractionJobInput, JobResult, NormalizedReceipt
from receipt_scanner.services.inference_client import InferenceClient
from receipt_scanner.services.metering_service import MeteringClient
from receipt_scanner.services.normalizer import NormalizationError, normalize
from receipt_scanner.services.receipt_store import ReceiptStore
from receipt_scanner.services.step_store import InMemoryStepStore, StepStore, step_key


logger = logging.getLogger(__name__)

# Durable step names; part of the step cache key, so renaming one invalidates cached results.
STEP_UPLOAD = "upload-document"
STEP_INFER = "infer-receipt"
STEP_PERSIST = "persist-receipt"
STEP_METER = "meter-usage"

TIMEOUT_REASON = "timeout"


@dataclass
class _Run:
    job: ExtractionJobInput
    job_key: str
    stage: PipelineStage = PipelineStage.PENDING
    owner_id: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


class ExtractionPipeline:
    """Runs extraction jobs against injected collaborators."""

    def __init__(
        self,
        inference: InferenceClient,
        store: ReceiptStore,
        metering: MeteringClient,
        steps: Optional[StepStore] = None,
        *,
        timeout_seconds: Optional[float] = None,
        metering_attempts: Optional[int] = None,
        metering_backoff: Optional[float] = None,
        scan_event: Optional[str] = None,
    ) -> None:
        self.inference = inference
        self.store = store
        self.metering = metering
        self.steps: StepStore = steps if steps is not None else InMemoryStepStore()
        self.timeout_seconds = timeout_seconds or settings.EXTRACTION_JOB_TIMEOUT_SECONDS
        self.metering_attempts = max(1, metering_attempts or settings.METERING_MAX_ATTEMPTS)
        self.metering_backoff = (
            metering_backoff if metering_backoff is not None else settings.METERING_BACKOFF_SECONDS
        )
        self.scan_event = scan_event or settings.SCHEMATIC_SCAN_EVENT

    async def aclose(self) -> None:
        await self.inference.aclose()
        await self.metering.aclose()
        close_steps = getattr(self.steps, "aclose", None)
        if close_steps is not None:
            await close_steps()

    # ------------------------------------------------------------------
    async def run(
        self,
        job: ExtractionJobInput,
        *,
        job_key: Optional[str] = None,
        final_attempt: bool = True,
    ) -> JobResult:
        """Run one job and return its outcome.

        ``job_key`` identifies the job across retries (the dramatiq message
        id); step results are cached under it.  ``final_attempt`` tells the
        pipeline whether a retryable failure should be handed back to the
        execution layer (re-raised) or recorded as the job's end.
        """
        run = _Run(job=job, job_key=job_key or uuid.uuid4().hex)
        sentry_set_tags({"receipt_id": job.receipt_id, "job_key": run.job_key})
        logger.info("[pipeline] start receipt=%s job=%s final_attempt=%s", job.receipt_id, run.job_key, final_attempt)
        try:
            normalized = await asyncio.wait_for(self._execute(run), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "[pipeline] receipt=%s timed out after %ss in stage=%s",
                job.receipt_id, self.timeout_seconds, run.stage.value,
            )
            return await self._fail(run, TIMEOUT_REASON)
        except ExtractionError as exc:
            if exc.retryable and not final_attempt:
                logger.warning(
                    "[pipeline] receipt=%s stage=%s retryable failure: %s",
                    job.receipt_id, run.stage.value, exc.message,
                )
                sentry_metric_inc("receipts.extraction.retry", tags={"stage": run.stage.value})
                raise
            return await self._fail(run, exc.message)
        except Exception as exc:
            logger.exception("[pipeline] receipt=%s unexpected error in stage=%s", job.receipt_id, run.stage.value)
            await self._fail(run, f"unexpected error: {exc}")
            raise
        return await self._finish(run, normalized)

    async def _execute(self, run: _Run) -> NormalizedReceipt:
        job = run.job

        async def upload() -> Dict[str, Any]:
            self._enter(run, PipelineStage.FETCHING)
            document = await self.inference.fetch_document(job.document_url)
            self._enter(run, PipelineStage.UPLOADING)
            return {"file_id": await self.inference.upload_document(document)}

        uploaded = await self._step(run, STEP_UPLOAD, upload)

        async def infer() -> Dict[str, Any]:
            return {"text": await self.inference.infer(uploaded["file_id"])}

        self._enter(run, PipelineStage.INFERRING)
        inferred = await self._step(run, STEP_INFER, infer)

        self._enter(run, PipelineStage.NORMALIZING)
        normalized = self._normalize(run, inferred["text"])

        async def persist() -> Dict[str, Any]:
            owner_id = await self.store.save_extraction(job.receipt_id, normalized, job.file_display_name)
            return {"owner_id": owner_id}

        self._enter(run, PipelineStage.PERSISTING)
        persisted = await self._step(run, STEP_PERSIST, persist)
        run.owner_id = persisted["owner_id"]
        return normalized

    async def _finish(self, run: _Run, normalized: NormalizedReceipt) -> JobResult:
        job = run.job
        self._enter(run, PipelineStage.METERING)
        await self._meter(run)

        self._enter(run, PipelineStage.DONE)
        sentry_metric_inc("receipts.extraction.saved")
        logger.info(
            "[pipeline] saved receipt=%s owner=%s items=%d elapsed_ms=%d",
            job.receipt_id, run.owner_id, len(normalized.items), run.elapsed_ms(),
        )
        return JobResult(receipt_id=job.receipt_id, status="saved", stage=run.stage, owner_id=run.owner_id)

    # ------------------------------------------------------------------
    def _enter(self, run: _Run, stage: PipelineStage) -> None:
        logger.debug("[pipeline] receipt=%s %s -> %s", run.job.receipt_id, run.stage.value, stage.value)
        run.stage = stage
        sentry_breadcrumb(category="extraction", message=stage.value, data={"receipt_id": run.job.receipt_id})

    async def _step(
        self,
        run: _Run,
        name: str,
        action: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        """Return the cached result of step ``name`` or run ``action`` and cache it."""
        key = step_key(run.job_key, name)
        cached = await self.steps.get(key)
        if cached is not None:
            logger.info("[pipeline] receipt=%s step=%s reused from previous attempt", run.job.receipt_id, name)
            return cached
        with sentry_sdk.start_span(op=f"extraction.{name}"):
            result = await action()
        await self.steps.set(key, result)
        return result

    @staticmethod
    def _normalize(run: _Run, text: str) -> NormalizedReceipt:
        result = normalize(text)
        if isinstance(result, NormalizationError):
            logger.warning(
                "[pipeline] receipt=%s malformed model output: %s excerpt=%r",
                run.job.receipt_id, result.reason, result.excerpt,
            )
            raise MalformedOutputError(f"malformed model output: {result.reason}")
        return result

    async def _meter(self, run: _Run) -> None:
        key = step_key(f"receipt-{run.job.receipt_id}", STEP_METER)
        if await self.steps.get(key) is not None:
            return
        owner_id = run.owner_id or ""
        for attempt in range(1, self.metering_attempts + 1):
            try:
                tracked = await self.metering.track(self.scan_event, company_id=owner_id, user_id=owner_id)
            except MeteringError as exc:
                logger.warning(
                    "[pipeline] receipt=%s metering attempt %d/%d failed: %s",
                    run.job.receipt_id, attempt, self.metering_attempts, exc,
                )
                if attempt < self.metering_attempts:
                    await asyncio.sleep(self.metering_backoff * attempt)
                continue
            await self.steps.set(key, {"tracked": tracked})
            return
        sentry_metric_inc("receipts.metering.dropped")
        logger.warning("[pipeline] receipt=%s usage event dropped after %d attempts", run.job.receipt_id, self.metering_attempts)

    async def _fail(self, run: _Run, reason: str) -> JobResult:
        stage = run.stage
        try:
            owner_id = await self.store.mark_failed(run.job.receipt_id, reason, stage)
        except Exception as exc:
            logger.error("[pipeline] receipt=%s could not record failure: %s", run.job.receipt_id, exc)
            sentry_capture(exc)
            owner_id = None
        run.stage = PipelineStage.FAILED
        sentry_metric_inc("receipts.extraction.failed", tags={"stage": stage.value})
        logger.info(
            "[pipeline] failed receipt=%s stage=%s recorded=%s reason=%s",
            run.job.receipt_id, stage.value, owner_id is not None, reason,
        )
        return JobResult(
            receipt_id=run.job.receipt_id, status="failed", stage=stage, owner_id=owner_id, error=reason,
        )


__all__ = ["ExtractionPipeline", "TIMEOUT_REASON"]
