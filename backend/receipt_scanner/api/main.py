"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
sets up startup and shutdown events. When run with uvicorn it
initialises Sentry and the database and loads configuration from
``receipt_scanner.core.config``::

    uvicorn receipt_scanner.api.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from receipt_scanner.api.error_handlers import register_exception_handlers
from receipt_scanner.api.routes.billing import router as billing_router
from receipt_scanner.api.routes.events import router as events_router
from receipt_scanner.api.routes.receipts import router as receipts_router
from receipt_scanner.core.config import settings
from receipt_scanner.core.database import init_db
from receipt_scanner.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)


# Middleware to enrich Sentry scope with lightweight request info
@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    if settings.SENTRY_DSN:
        sentry_sdk.set_tag("path", request.url.path)
        sentry_sdk.set_tag("method", request.method)
    return await call_next(request)


def build_cors_origins() -> list[str]:
    """CORS configuration.

    1. In development => allow all ( * ).
    2. Otherwise start from BACKEND_CORS_ORIGINS and add the
       FRONTEND_BASE_URL origin, deduplicated in order.
    """
    if (settings.ENVIRONMENT or "development").lower() == "development":
        return ["*"]
    origins = list(settings.BACKEND_CORS_ORIGINS or [])
    parsed = urlparse(settings.FRONTEND_BASE_URL or "")
    if parsed.scheme and parsed.netloc:
        origins.append(f"{parsed.scheme}://{parsed.netloc}")
    seen: set[str] = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


app.add_middleware(
    CORSMiddleware,
    allow_origins=build_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(receipts_router)
app.include_router(billing_router)
app.include_router(events_router)


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}
