"""Dramatiq worker entry point.

Imports the broker and actors so they are registered when the worker
starts, after initialising Sentry for the worker process.

Run with:
    python -m dramatiq receipt_scanner.worker
"""

import logging

from receipt_scanner.core.config import settings
from receipt_scanner.core.observability import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Import tasks to register them
from receipt_scanner.core.tasks import broker, extract_receipt  # noqa: E402,F401

logger.info("Worker ready environment=%s actors=%s", settings.ENVIRONMENT, [extract_receipt.actor_name])
