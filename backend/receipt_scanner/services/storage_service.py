"""Object storage for receipt documents (MinIO / S3 compatible).

Every stored object is addressed by a *file id*: the object key
``owner_id/uuid_filename`` inside ``settings.MINIO_BUCKET_NAME``.  The
key is persisted on the receipt row and handed to the extraction worker
only as a presigned download URL, so the worker never needs storage
credentials.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from io import BytesIO
from typing import Optional, Tuple

from minio import Minio
from minio.error import S3Error

from receipt_scanner.core.config import settings


logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = {"NoSuchKey", "NoSuchObject", "NoSuchBucket"}


class StorageService:
    """Presigned URLs and direct object access for receipt files."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None) -> None:
        self._client = client or Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=bool(settings.MINIO_USE_SSL),
        )
        self.bucket = bucket or settings.MINIO_BUCKET_NAME
        self.url_expiry = timedelta(seconds=settings.STORAGE_URL_EXPIRY_SECONDS)
        self._bucket_ready = False

    @staticmethod
    def _normalise_filename(filename: str) -> str:
        """Remove potentially dangerous characters and ensure a safe filename."""
        keepchars = {"-", "_", "."}
        safe = "".join(c for c in filename if c.isalnum() or c in keepchars)
        return safe or "receipt.pdf"

    def _new_file_id(self, owner_id: str, file_name: str) -> str:
        return f"{owner_id}/{uuid.uuid4().hex}_{self._normalise_filename(file_name)}"

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        if not self._client.bucket_exists(self.bucket):
            self._client.make_bucket(self.bucket)
            logger.info("[storage] created bucket %s", self.bucket)
        self._bucket_ready = True

    def generate_upload_url(self, owner_id: str, file_name: str) -> Tuple[str, str]:
        """Return ``(file_id, presigned PUT url)`` for a client-side upload."""
        self._ensure_bucket()
        file_id = self._new_file_id(owner_id, file_name)
        url = self._client.presigned_put_object(self.bucket, file_id, expires=self.url_expiry)
        return file_id, url

    def save_bytes(self, owner_id: str, file_name: str, data: bytes, content_type: str) -> str:
        """Store an upload received by the API and return its file id."""
        if not data:
            raise ValueError("Empty upload payload")
        self._ensure_bucket()
        file_id = self._new_file_id(owner_id, file_name)
        self._client.put_object(
            self.bucket,
            file_id,
            BytesIO(data),
            len(data),
            content_type=content_type or "application/octet-stream",
        )
        logger.info("[storage] object put key=%s size=%d", file_id, len(data))
        return file_id

    def exists(self, file_id: str) -> bool:
        try:
            self._client.stat_object(self.bucket, file_id)
        except S3Error as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                return False
            raise
        return True

    def get_url(self, file_id: str) -> Optional[str]:
        """Presigned download URL, or ``None`` when the object does not exist."""
        if not file_id or not self.exists(file_id):
            return None
        return self._client.presigned_get_object(self.bucket, file_id, expires=self.url_expiry)

    def owns(self, owner_id: str, file_id: str) -> bool:
        """True when ``file_id`` lives in ``owner_id``'s key namespace."""
        return file_id.startswith(f"{owner_id}/")

    def delete(self, file_id: str) -> None:
        self._client.remove_object(self.bucket, file_id)
        logger.info("[storage] object removed key=%s", file_id)


__all__ = ["StorageService"]
