"""Pydantic schemas for the extraction domain and the HTTP API.

Pydantic models are used for validating and serialising data that
crosses a boundary: the trigger event payload, the normalised
extraction result handed from the normaliser to the store, the job
result returned by the worker, and the request/response bodies of the
API.  Schemas are intentionally separate from the ORM models so that
what is stored and what is exposed can evolve independently.

Note that ``NormalizedReceipt`` is *built* by the explicit coercion
functions in ``receipt_scanner.services.normalizer``; it is never used
to validate raw model output directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .enums import PipelineStage, ReceiptStatus


# ---------------------------------------------------------------------------
# Extraction domain


class LineItem(BaseModel):
    """Individual line item on a receipt.

    No arithmetic relationship between the fields is enforced; model
    output is frequently inconsistent and is stored as given.
    """

    name: str = ""
    quantity: float = Field(default=0.0, ge=0)
    unit_price: float = Field(default=0.0, ge=0)
    total_price: float = Field(default=0.0, ge=0)


class NormalizedReceipt(BaseModel):
    """Strict receipt shape produced from free-form model output."""

    merchant_name: str = ""
    merchant_address: str = ""
    merchant_contact: str = ""
    transaction_date: str = ""
    receipt_number: str = ""
    payment_method: str = ""
    items: List[LineItem] = Field(default_factory=list)
    subtotal: float = Field(default=0.0, ge=0)
    tax: float = Field(default=0.0, ge=0)
    transaction_amount: float = Field(default=0.0, ge=0)
    currency: str = ""
    summary: str = ""
    display_name: str = ""


class ExtractionJobInput(BaseModel):
    """Arguments of one extraction job, built from the trigger event."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    document_url: str = Field(validation_alias=AliasChoices("document_url", "documentUrl", "url"))
    receipt_id: str = Field(validation_alias=AliasChoices("receipt_id", "receiptId"))
    file_display_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("file_display_name", "fileDisplayName")
    )

    @field_validator("document_url")
    @classmethod
    def _require_http_url(cls, v: str) -> str:
        parsed = urlparse(v or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("document_url must be an absolute http(s) URL")
        return v

    @field_validator("receipt_id")
    @classmethod
    def _require_receipt_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("receipt_id must not be empty")
        return v.strip()


class JobResult(BaseModel):
    """Outcome of one extraction job."""

    receipt_id: str
    status: Literal["saved", "failed"]
    stage: PipelineStage
    owner_id: Optional[str] = None
    error: Optional[str] = None

    def as_event(self) -> Dict[str, Any]:
        """Return the job completion payload published on the event bus."""
        return {"receiptId": self.receipt_id, "status": self.status}


# ---------------------------------------------------------------------------
# API request/response schemas


class ReceiptRead(BaseModel):
    id: str
    owner_id: str
    file_name: str
    file_display_name: Optional[str] = None
    size: int
    mime_type: str
    file_id: str
    uploaded_at: datetime
    status: ReceiptStatus
    merchant_name: Optional[str] = None
    merchant_address: Optional[str] = None
    merchant_contact: Optional[str] = None
    transaction_date: Optional[str] = None
    transaction_amount: Optional[float] = None
    currency: Optional[str] = None
    receipt_summary: Optional[str] = None
    receipt_number: Optional[str] = None
    payment_method: Optional[str] = None
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    items: List[LineItem] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    failed_stage: Optional[PipelineStage] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptRegister(BaseModel):
    """Registers a file the client uploaded directly to object storage."""

    file_id: str
    file_name: str
    size: int = Field(ge=0)
    mime_type: str = "application/pdf"


class ReceiptUpdate(BaseModel):
    """Owner-editable receipt fields."""

    file_display_name: Optional[str] = Field(default=None, max_length=255)


class UploadUrlRequest(BaseModel):
    file_name: str = "receipt.pdf"


class UploadUrlResponse(BaseModel):
    file_id: str
    upload_url: str


class DownloadUrlResponse(BaseModel):
    url: str


class AccessTokenResponse(BaseModel):
    token: Optional[str] = None
