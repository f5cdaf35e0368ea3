"""API routes for receipt upload and retrieval."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from starlette.concurrency import run_in_threadpool

from receipt_scanner.api.dependencies import get_current_subject, get_storage, get_store
from receipt_scanner.core.config import settings
from receipt_scanner.core.events import EXTRACT_RECEIPT_EVENT, send_event
from receipt_scanner.core.observability import sentry_breadcrumb
from receipt_scanner.models.enums import PipelineStage, ReceiptSort, ReceiptStatus
from receipt_scanner.models.schemas import (
    DownloadUrlResponse,
    ReceiptRead,
    ReceiptRegister,
    ReceiptUpdate,
    UploadUrlRequest,
    UploadUrlResponse,
)
from receipt_scanner.models.tables import Receipt
from receipt_scanner.services.receipt_store import ReceiptStore
from receipt_scanner.services.storage_service import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


def _check_upload(mime_type: Optional[str], size: int) -> None:
    if mime_type not in settings.ALLOWED_UPLOAD_MIME_TYPES:
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")
    if size <= 0:
        raise HTTPException(status_code=400, detail="Empty file")
    if size > settings.MAX_UPLOAD_SIZE:
        limit_mb = settings.MAX_UPLOAD_SIZE // (1024 * 1024)
        raise HTTPException(status_code=400, detail=f"File too large. Maximum size is {limit_mb}MB")


async def _start_extraction(store: ReceiptStore, storage: StorageService, receipt: Receipt) -> None:
    """Resolve a download URL for the stored file and send the extraction event.

    If the job cannot be handed off the receipt is marked failed right away
    instead of sitting in ``processing`` forever.
    """
    url = await run_in_threadpool(storage.get_url, receipt.file_id)
    if not url:
        await store.mark_failed(receipt.id, "stored file not found", PipelineStage.PENDING)
        raise HTTPException(status_code=500, detail="Stored file could not be resolved")
    try:
        send_event(
            EXTRACT_RECEIPT_EVENT,
            {"url": url, "receiptId": receipt.id, "fileDisplayName": receipt.file_display_name},
        )
    except Exception as exc:
        logger.exception("could not enqueue extraction receipt=%s", receipt.id)
        await store.mark_failed(receipt.id, f"could not start extraction: {exc}", PipelineStage.PENDING)
        raise HTTPException(status_code=503, detail="Extraction queue unavailable") from exc
    sentry_breadcrumb(category="receipts", message="extraction.enqueued", data={"receipt_id": receipt.id})


@router.post("", response_model=ReceiptRead)
async def upload_receipt(
    file: UploadFile = File(...),
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
) -> ReceiptRead:
    """Upload a PDF receipt and start extraction."""
    contents = await file.read()
    _check_upload(file.content_type, len(contents))
    file_name = file.filename or "receipt.pdf"

    file_id = await run_in_threadpool(storage.save_bytes, subject, file_name, contents, file.content_type)
    receipt = await store.insert(
        owner_id=subject,
        file_id=file_id,
        file_name=file_name,
        size=len(contents),
        mime_type=file.content_type,
    )
    await _start_extraction(store, storage, receipt)
    return ReceiptRead.model_validate(receipt)


@router.post("/upload-url", response_model=UploadUrlResponse)
async def create_upload_url(
    body: UploadUrlRequest,
    subject: str = Depends(get_current_subject),
    storage: StorageService = Depends(get_storage),
) -> UploadUrlResponse:
    """Presigned URL for uploading a receipt straight to object storage."""
    file_id, url = await run_in_threadpool(storage.generate_upload_url, subject, body.file_name)
    return UploadUrlResponse(file_id=file_id, upload_url=url)


@router.post("/register", response_model=ReceiptRead)
async def register_upload(
    body: ReceiptRegister,
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
) -> ReceiptRead:
    """Record a receipt the client uploaded with a presigned URL and start extraction."""
    if not storage.owns(subject, body.file_id):
        raise HTTPException(status_code=403, detail="File does not belong to the current user")
    _check_upload(body.mime_type, body.size)
    if not await run_in_threadpool(storage.exists, body.file_id):
        raise HTTPException(status_code=400, detail="File has not been uploaded")
    receipt = await store.insert(
        owner_id=subject,
        file_id=body.file_id,
        file_name=body.file_name,
        size=body.size,
        mime_type=body.mime_type,
    )
    await _start_extraction(store, storage, receipt)
    return ReceiptRead.model_validate(receipt)


@router.get("", response_model=List[ReceiptRead])
async def list_receipts(
    q: Optional[str] = Query(None, description="Search file name, merchant or date"),
    status_filter: Optional[ReceiptStatus] = Query(None, alias="status"),
    sort: ReceiptSort = Query(ReceiptSort.DATE),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
) -> List[ReceiptRead]:
    receipts = await store.query(subject, search=q, status=status_filter, sort=sort, limit=limit, offset=offset)
    return [ReceiptRead.model_validate(r) for r in receipts]


@router.get("/{receipt_id}", response_model=ReceiptRead)
async def get_receipt(
    receipt_id: str,
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
) -> ReceiptRead:
    return ReceiptRead.model_validate(await store.get(receipt_id, subject))


@router.patch("/{receipt_id}", response_model=ReceiptRead)
async def update_receipt(
    receipt_id: str,
    body: ReceiptUpdate,
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
) -> ReceiptRead:
    """Rename a receipt; extracted data and status are not editable."""
    fields = body.model_dump(exclude_unset=True)
    receipt = await store.patch(receipt_id, subject, fields)
    return ReceiptRead.model_validate(receipt)


@router.get("/{receipt_id}/download-url", response_model=DownloadUrlResponse)
async def get_download_url(
    receipt_id: str,
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
) -> DownloadUrlResponse:
    receipt = await store.get(receipt_id, subject)
    url = await run_in_threadpool(storage.get_url, receipt.file_id)
    if not url:
        raise HTTPException(status_code=404, detail="File not available")
    return DownloadUrlResponse(url=url)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_receipt(
    receipt_id: str,
    subject: str = Depends(get_current_subject),
    store: ReceiptStore = Depends(get_store),
    storage: StorageService = Depends(get_storage),
) -> Response:
    receipt = await store.delete(receipt_id, subject)
    try:
        await run_in_threadpool(storage.delete, receipt.file_id)
    except Exception as exc:
        logger.warning("could not delete stored file %s: %s", receipt.file_id, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
