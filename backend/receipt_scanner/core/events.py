"""In-process event bus connecting uploads to background extraction.

Producers call ``send_event(name, data)``; each event name maps to one
registered handler.  The only event today is
``EXTRACT_RECEIPT_EVENT``, sent once a receipt upload has been stored
and recorded.  Its handler is the trigger adapter: it validates the
payload and enqueues exactly one extraction job, nothing more.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping

from receipt_scanner.core.tasks import extract_receipt
from receipt_scanner.models.schemas import ExtractionJobInput


logger = logging.getLogger(__name__)

EXTRACT_RECEIPT_EVENT = "receipts/extract-data-from-pdf-and-save-to-database"

EventHandler = Callable[[Mapping[str, Any]], Any]

_handlers: Dict[str, EventHandler] = {}


def register_handler(name: str, handler: EventHandler) -> None:
    _handlers[name] = handler


def send_event(name: str, data: Mapping[str, Any]) -> Any:
    """Dispatch ``data`` to the handler registered for ``name``."""
    handler = _handlers.get(name)
    if handler is None:
        raise ValueError(f"No handler registered for event {name!r}")
    logger.info("[events] %s receipt=%s", name, data.get("receiptId"))
    return handler(data)


def on_upload_completed(payload: Mapping[str, Any]):
    """Trigger adapter: turn an upload event into one ``extract_receipt`` message.

    Accepts ``url`` (or ``documentUrl``), ``receiptId`` and an optional
    ``fileDisplayName``; raises ``pydantic.ValidationError`` when they are
    missing or malformed.
    """
    job = ExtractionJobInput.model_validate(payload)
    return extract_receipt.send(job.document_url, job.receipt_id, job.file_display_name)


register_handler(EXTRACT_RECEIPT_EVENT, on_upload_completed)


__all__ = ["EXTRACT_RECEIPT_EVENT", "on_upload_completed", "register_handler", "send_event"]
