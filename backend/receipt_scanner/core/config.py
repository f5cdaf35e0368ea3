"""Application configuration.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  As a last
# resort, a .env in the backend directory may be used.  Files are loaded in
# order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_LOCAL_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_LOCAL_ENV) and _LOCAL_ENV not in _candidate_envs:
    _candidate_envs.append(_LOCAL_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Receipt Scanner"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback (fail fast by default)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Redis / dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Inference provider (OpenAI)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    EXTRACTION_MODEL: str = Field(default="gpt-4o-mini")
    EXTRACTION_MAX_COMPLETION_TOKENS: int = Field(default=2000)
    # Fixed purpose label attached to every uploaded document
    INFERENCE_FILE_PURPOSE: str = Field(default="user_data")
    DOCUMENT_FETCH_TIMEOUT_SECONDS: float = Field(default=30.0)

    # Extraction pipeline
    EXTRACTION_JOB_TIMEOUT_SECONDS: float = Field(default=300.0)
    EXTRACTION_MAX_RETRIES: int = Field(default=3)
    EXTRACTION_MIN_BACKOFF_MS: int = Field(default=5000)
    EXTRACTION_MAX_BACKOFF_MS: int = Field(default=60000)
    STEP_CACHE_TTL_SECONDS: int = Field(default=24 * 3600)
    METERING_MAX_ATTEMPTS: int = Field(default=3)
    METERING_BACKOFF_SECONDS: float = Field(default=0.5)

    # Storage
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_URL_EXPIRY_SECONDS: int = Field(default=3600)

    # Auth
    # Disable auth bypass by default for improved security.  Override in .env
    # or via environment variable only when running locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    CLERK_JWKS_URL: Optional[str] = Field(default=None)
    CLERK_JWT_AUDIENCE: Optional[str] = Field(default=None)
    CLERK_JWT_ISSUER: Optional[str] = Field(default=None)

    # Entitlements / usage metering (Schematic)
    SCHEMATIC_API_KEY: Optional[str] = Field(default=None)
    SCHEMATIC_API_URL: str = Field(default="https://api.schematichq.com")
    SCHEMATIC_SCAN_EVENT: str = Field(default="scan")

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    ALLOWED_UPLOAD_MIME_TYPES: set[str] = {"application/pdf"}

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )
    FRONTEND_BASE_URL: str = Field(default="http://localhost:3000")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    # Optional Sentry release name to tag backend/worker events consistently with frontend
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()


def is_test_environment() -> bool:
    """Return True when running under the test suite (``ENVIRONMENT=test``)."""
    return (settings.ENVIRONMENT or "").lower() == "test"
