"""SQLAlchemy ORM models for the receipt scanner.

A single ``receipts`` table holds one row per uploaded document: the
upload metadata written when the file is registered, the lifecycle
status, and the extracted fields written by the extraction job.  Line
items are owned by their receipt and have no identity of their own, so
they live in a JSON column that is always replaced as a whole.

If you extend or modify these models remember to run migrations or call
the ``init_db`` helper during development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Column,
    String,
    Integer,
    Float,
    DateTime,
    Enum,
    Text,
    JSON,
    Index,
)

from receipt_scanner.core.database import Base
from .enums import ReceiptStatus, PipelineStage


def _new_receipt_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Receipt(Base):
    """Uploaded receipt and the data extracted from it."""

    __tablename__ = "receipts"
    __table_args__ = (Index("ix_receipts_owner_uploaded_at", "owner_id", "uploaded_at"),)

    id = Column(String(32), primary_key=True, default=_new_receipt_id)
    # Identity provider subject of the uploader
    owner_id = Column(String, nullable=False, index=True)

    # Upload metadata
    file_name = Column(String, nullable=False)
    file_display_name = Column(String, nullable=True)
    size = Column(Integer, nullable=False, default=0)
    mime_type = Column(String, nullable=False, default="application/pdf")
    file_id = Column(String, nullable=False)  # object storage handle
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.PROCESSING, nullable=False)

    # Extracted fields (populated when status is COMPLETED)
    merchant_name = Column(String, nullable=True)
    merchant_address = Column(String, nullable=True)
    merchant_contact = Column(String, nullable=True)
    transaction_date = Column(String, nullable=True)  # free-form, receipts vary
    transaction_amount = Column(Float, nullable=True)
    currency = Column(String(16), nullable=True)
    receipt_summary = Column(Text, nullable=True)
    receipt_number = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)
    subtotal = Column(Float, nullable=True)
    tax = Column(Float, nullable=True)
    items = Column(JSON, nullable=False, default=list)

    # Failure bookkeeping
    failure_reason = Column(Text, nullable=True)
    failed_stage = Column(Enum(PipelineStage), nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
