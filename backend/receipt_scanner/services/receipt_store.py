"""Receipt persistence.

``ReceiptStore`` is the only code that reads or writes the ``receipts``
table.  It offers two families of operations:

* **Owner-scoped** (``insert``, ``get``, ``patch``, ``delete``,
  ``query``) used by the API.  Every call names the requesting subject
  and fails with ``AccessDeniedError`` when the row belongs to someone
  else.
* **System writes** (``save_extraction``, ``mark_failed``) used by the
  extraction worker, which acts on behalf of the owner recorded on the
  row.

Status only ever moves ``processing -> completed`` or
``processing -> failed``.  ``save_extraction`` is a full overwrite, so
running it twice for the same receipt (redelivered trigger events)
leaves the same values behind rather than accumulating line items.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy import delete as sa_delete, func, or_, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receipt_scanner.core.exceptions import (
    AccessDeniedError,
    InvalidStatusTransitionError,
    ReceiptNotFoundError,
    TransientPersistenceError,
)
from receipt_scanner.models.enums import PipelineStage, ReceiptSort, ReceiptStatus
from receipt_scanner.models.schemas import NormalizedReceipt
from receipt_scanner.models.tables import Receipt


logger = logging.getLogger(__name__)

# Fields the owner may change directly; everything else is written by uploads or the worker.
PATCHABLE_FIELDS = frozenset({"file_display_name"})

MAX_FAILURE_REASON_LENGTH = 2000


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReceiptStore:
    """Async repository over the ``receipts`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Owner-scoped operations

    @staticmethod
    def _check_owner(receipt: Optional[Receipt], receipt_id: str, owner_id: str) -> Receipt:
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        if receipt.owner_id != owner_id:
            raise AccessDeniedError(receipt_id)
        return receipt

    async def insert(
        self,
        *,
        owner_id: str,
        file_id: str,
        file_name: str,
        size: int,
        mime_type: str,
    ) -> Receipt:
        """Create the row for a completed upload in the ``processing`` state."""
        receipt = Receipt(
            owner_id=owner_id,
            file_id=file_id,
            file_name=file_name,
            size=size,
            mime_type=mime_type,
            status=ReceiptStatus.PROCESSING,
            items=[],
            uploaded_at=_utcnow(),
        )
        async with self._session_factory() as session:
            session.add(receipt)
            await session.commit()
            await session.refresh(receipt)
        logger.info("[store] inserted receipt id=%s owner=%s file=%s", receipt.id, owner_id, file_name)
        return receipt

    async def get(self, receipt_id: str, owner_id: str) -> Receipt:
        async with self._session_factory() as session:
            receipt = await session.get(Receipt, receipt_id)
        return self._check_owner(receipt, receipt_id, owner_id)

    async def patch(self, receipt_id: str, owner_id: str, fields: Mapping[str, Any]) -> Receipt:
        """Update owner-editable fields; unknown or protected fields raise ``ValueError``."""
        rejected = set(fields) - PATCHABLE_FIELDS
        if rejected:
            raise ValueError(f"Fields cannot be patched: {', '.join(sorted(rejected))}")
        async with self._session_factory() as session:
            receipt = self._check_owner(await session.get(Receipt, receipt_id), receipt_id, owner_id)
            for name, value in fields.items():
                setattr(receipt, name, value)
            await session.commit()
            await session.refresh(receipt)
        return receipt

    async def delete(self, receipt_id: str, owner_id: str) -> Receipt:
        """Delete the row and return it (callers clean up the stored file)."""
        async with self._session_factory() as session:
            receipt = self._check_owner(await session.get(Receipt, receipt_id), receipt_id, owner_id)
            await session.execute(sa_delete(Receipt).where(Receipt.id == receipt_id))
            await session.commit()
        logger.info("[store] deleted receipt id=%s owner=%s", receipt_id, owner_id)
        return receipt

    async def query(
        self,
        owner_id: str,
        *,
        search: Optional[str] = None,
        status: Optional[ReceiptStatus] = None,
        sort: ReceiptSort = ReceiptSort.DATE,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Receipt]:
        """List the owner's receipts, newest upload first unless ``sort`` says otherwise."""
        stmt = select(Receipt).where(Receipt.owner_id == owner_id)
        if search and search.strip():
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Receipt.file_name).like(pattern),
                    func.lower(Receipt.file_display_name).like(pattern),
                    func.lower(Receipt.merchant_name).like(pattern),
                    func.lower(Receipt.transaction_date).like(pattern),
                )
            )
        if status is not None:
            stmt = stmt.where(Receipt.status == status)
        if sort == ReceiptSort.AMOUNT:
            stmt = stmt.order_by(Receipt.transaction_amount.desc().nulls_last(), Receipt.uploaded_at.desc())
        elif sort == ReceiptSort.MERCHANT:
            stmt = stmt.order_by(func.lower(Receipt.merchant_name).asc().nulls_last(), Receipt.uploaded_at.desc())
        else:
            stmt = stmt.order_by(Receipt.uploaded_at.desc())
        stmt = stmt.offset(offset).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # System writes (extraction worker)

    async def save_extraction(
        self,
        receipt_id: str,
        normalized: NormalizedReceipt,
        display_name: Optional[str] = None,
    ) -> str:
        """Overwrite every extracted field, mark the receipt completed, return its owner.

        Raises ``ReceiptNotFoundError`` for a missing row,
        ``InvalidStatusTransitionError`` for a receipt that already
        failed, and ``TransientPersistenceError`` on connectivity errors.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Receipt).where(Receipt.id == receipt_id).with_for_update()
                )
                receipt = result.scalar_one_or_none()
                if receipt is None:
                    raise ReceiptNotFoundError(receipt_id)
                if receipt.status == ReceiptStatus.FAILED:
                    raise InvalidStatusTransitionError(
                        f"Receipt {receipt_id} already failed; extraction result not saved"
                    )
                receipt.file_display_name = (
                    display_name or normalized.display_name or receipt.file_display_name or None
                )
                receipt.merchant_name = normalized.merchant_name
                receipt.merchant_address = normalized.merchant_address
                receipt.merchant_contact = normalized.merchant_contact
                receipt.transaction_date = normalized.transaction_date
                receipt.transaction_amount = normalized.transaction_amount
                receipt.currency = normalized.currency
                receipt.receipt_summary = normalized.summary
                receipt.receipt_number = normalized.receipt_number
                receipt.payment_method = normalized.payment_method
                receipt.subtotal = normalized.subtotal
                receipt.tax = normalized.tax
                receipt.items = _dump_items(normalized)
                receipt.failure_reason = None
                receipt.failed_stage = None
                receipt.status = ReceiptStatus.COMPLETED
                receipt.completed_at = _utcnow()
                owner_id = receipt.owner_id
                await session.commit()
        except (OperationalError, InterfaceError) as exc:
            raise TransientPersistenceError(f"Database unavailable while saving receipt {receipt_id}: {exc}") from exc
        logger.info("[store] saved extraction receipt=%s items=%d", receipt_id, len(normalized.items))
        return owner_id

    async def mark_failed(self, receipt_id: str, reason: str, stage: PipelineStage) -> Optional[str]:
        """Move a ``processing`` receipt to ``failed`` and return its owner.

        Returns ``None`` (and writes nothing) when the row is missing or
        no longer processing, so a late failure can never overwrite a
        receipt another job already completed.
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Receipt).where(Receipt.id == receipt_id).with_for_update()
                )
                receipt = result.scalar_one_or_none()
                if receipt is None or receipt.status != ReceiptStatus.PROCESSING:
                    return None
                receipt.status = ReceiptStatus.FAILED
                receipt.failure_reason = (reason or "unknown error")[:MAX_FAILURE_REASON_LENGTH]
                receipt.failed_stage = stage
                receipt.completed_at = _utcnow()
                owner_id = receipt.owner_id
                await session.commit()
        except (OperationalError, InterfaceError) as exc:
            raise TransientPersistenceError(f"Database unavailable while failing receipt {receipt_id}: {exc}") from exc
        logger.info("[store] marked receipt failed id=%s stage=%s", receipt_id, stage.value)
        return owner_id


def _dump_items(normalized: NormalizedReceipt) -> List[dict]:
    items: Iterable = normalized.items
    return [item.model_dump() for item in items]


__all__ = ["ReceiptStore", "PATCHABLE_FIELDS"]
