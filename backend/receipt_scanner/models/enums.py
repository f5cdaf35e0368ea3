"""Enumeration types used throughout the receipt scanner.

Enumerations make it easier to constrain the values that can be
stored in the database or passed through the API. They also
improve readability when dealing with domain concepts like
receipt lifecycle states or extraction pipeline stages.

When modifying these enums you should update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class ReceiptStatus(str, Enum):
    """Lifecycle states for a receipt.

    A receipt starts in ``PROCESSING`` when the upload is registered and
    moves exactly once to either ``COMPLETED`` or ``FAILED``.
    """

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Stages of a single extraction job, in execution order."""

    PENDING = "pending"
    FETCHING = "fetching"
    UPLOADING = "uploading"
    INFERRING = "inferring"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    METERING = "metering"
    DONE = "done"
    FAILED = "failed"


class ReceiptSort(str, Enum):
    """Orderings offered by the receipt list endpoint."""

    DATE = "date"
    AMOUNT = "amount"
    MERCHANT = "merchant"
