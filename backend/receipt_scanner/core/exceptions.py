"""Exception taxonomy for receipt extraction and persistence.

Every extraction failure carries two pieces of routing information:

``retryable``
    Whether re-running the same job can reasonably succeed.  The
    dramatiq actor only retries exceptions with this flag set.
``stage``
    The pipeline stage the failure belongs to; stored on the receipt
    when the job gives up so the dashboard can explain what went wrong.
"""

from __future__ import annotations

from typing import Optional

from receipt_scanner.models.enums import PipelineStage


class ExtractionError(Exception):
    """Base class for failures raised while extracting a receipt."""

    retryable: bool = False
    stage: PipelineStage = PipelineStage.FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class FetchError(ExtractionError):
    """The source document could not be downloaded."""

    retryable = True
    stage = PipelineStage.FETCHING

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UploadError(ExtractionError):
    """The inference provider rejected the document upload."""

    retryable = True
    stage = PipelineStage.UPLOADING

    def __init__(self, status_code: Optional[int], message: str) -> None:
        super().__init__(f"upload rejected (status={status_code}): {message}")
        self.status_code = status_code
        self.provider_message = message


class InferenceError(ExtractionError):
    """The extraction request failed, timed out or returned nothing."""

    retryable = True
    stage = PipelineStage.INFERRING


class MalformedOutputError(ExtractionError):
    """The model reply could not be parsed as a receipt object."""

    stage = PipelineStage.NORMALIZING


class PersistenceError(ExtractionError):
    """Writing the extraction result failed."""

    stage = PipelineStage.PERSISTING


class ReceiptNotFoundError(PersistenceError):
    """The receipt row does not exist; it must be created at upload time."""

    def __init__(self, receipt_id: str) -> None:
        super().__init__(f"Receipt {receipt_id} not found")
        self.receipt_id = receipt_id


class TransientPersistenceError(PersistenceError):
    """Database connectivity problem; safe to retry."""

    retryable = True


class InvalidStatusTransitionError(PersistenceError):
    """The receipt is in a state that does not accept the requested write."""


class MeteringError(Exception):
    """The entitlement service rejected or could not receive a usage event."""


class AccessDeniedError(Exception):
    """The requesting subject does not own the receipt."""

    def __init__(self, receipt_id: str) -> None:
        super().__init__(f"Access denied to receipt {receipt_id}")
        self.receipt_id = receipt_id


__all__ = [
    "ExtractionError",
    "FetchError",
    "UploadError",
    "InferenceError",
    "MalformedOutputError",
    "PersistenceError",
    "ReceiptNotFoundError",
    "TransientPersistenceError",
    "InvalidStatusTransitionError",
    "MeteringError",
    "AccessDeniedError",
]
