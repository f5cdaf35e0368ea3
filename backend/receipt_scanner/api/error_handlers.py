"""
Custom exception handlers for FastAPI.
Maps domain errors to HTTP statuses and keeps error bodies in one shape:
``{"error": ..., "details": ...}``.
"""

import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from receipt_scanner.core.config import settings
from receipt_scanner.core.exceptions import (
    AccessDeniedError,
    InvalidStatusTransitionError,
    ReceiptNotFoundError,
)

logger = logging.getLogger(__name__)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": exc.errors(),
        },
    )


def not_found_handler(request: Request, exc: ReceiptNotFoundError):
    return JSONResponse(
        status_code=HTTP_404_NOT_FOUND,
        content={"error": "Receipt not found", "details": exc.receipt_id},
    )


def access_denied_handler(request: Request, exc: AccessDeniedError):
    logger.warning("access denied path=%s receipt=%s", request.url.path, exc.receipt_id)
    return JSONResponse(
        status_code=HTTP_403_FORBIDDEN,
        content={"error": "Access denied", "details": exc.receipt_id},
    )


def status_conflict_handler(request: Request, exc: InvalidStatusTransitionError):
    return JSONResponse(
        status_code=HTTP_409_CONFLICT,
        content={"error": "Invalid receipt status", "details": exc.message},
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error path=%s", request.url.path)
    if settings.SENTRY_DSN:
        sentry_sdk.capture_exception(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ReceiptNotFoundError, not_found_handler)
    app.add_exception_handler(AccessDeniedError, access_denied_handler)
    app.add_exception_handler(InvalidStatusTransitionError, status_conflict_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
