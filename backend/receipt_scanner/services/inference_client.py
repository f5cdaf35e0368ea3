"""Inference client for receipt documents.

Extraction is a two-step exchange with the inference provider:

1. **Document ingestion** – the receipt is downloaded from its (presigned)
   URL and uploaded to the provider's file store with a fixed purpose
   label, yielding an opaque file id.  The provider only accepts
   documents in multi-modal prompts once they have been registered this
   way.
2. **Structured extraction** – a single-turn chat completion references
   the file id together with the extraction prompt.  The raw reply text
   is returned unparsed; ``receipt_scanner.services.normalizer`` owns
   parsing.

Each step is exposed separately so the extraction pipeline can run them
as independently retried durable steps; ``extract`` composes them for
callers that do not need that.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx
import openai
from openai import AsyncOpenAI

from receipt_scanner.core.config import settings
from receipt_scanner.core.exceptions import FetchError, InferenceError, UploadError
from receipt_scanner.utils.prompts import get_default_extraction_prompt


logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "receipt.pdf"
DEFAULT_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class FetchedDocument:
    """Bytes of a source document plus the metadata needed to upload it."""

    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE
    file_name: str = DEFAULT_FILE_NAME


def file_name_from_url(url: str) -> str:
    """Best-effort file name from the last path segment of ``url``."""
    segment = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    return segment or DEFAULT_FILE_NAME


class InferenceClient:
    """Uploads receipt documents to the inference provider and extracts text."""

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        model: Optional[str] = None,
        file_purpose: Optional[str] = None,
        prompt: Optional[str] = None,
        max_completion_tokens: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        self._openai = openai_client
        self._owns_openai = openai_client is None
        self._http = http_client
        self._owns_http = http_client is None
        self.model = model or settings.EXTRACTION_MODEL
        self.file_purpose = file_purpose or settings.INFERENCE_FILE_PURPOSE
        self.prompt = prompt or get_default_extraction_prompt()
        self.max_completion_tokens = max_completion_tokens or settings.EXTRACTION_MAX_COMPLETION_TOKENS
        self.fetch_timeout = fetch_timeout or settings.DOCUMENT_FETCH_TIMEOUT_SECONDS

    # -- owned clients ---------------------------------------------------
    def _openai_client(self) -> AsyncOpenAI:
        if self._openai is None:
            self._openai = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        return self._openai

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True)
        return self._http

    async def aclose(self) -> None:
        """Close the clients this instance created (injected ones are left open)."""
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
        if self._owns_openai and self._openai is not None:
            await self._openai.close()
            self._openai = None

    # -- step A: document ingestion --------------------------------------
    async def fetch_document(self, document_url: str) -> FetchedDocument:
        """Download the document bytes; any non-2xx response is a ``FetchError``."""
        try:
            response = await self._http_client().get(document_url)
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch document: {exc}") from exc
        if not response.is_success:
            raise FetchError(
                f"Failed to fetch document: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        content_type = response.headers.get("content-type", DEFAULT_CONTENT_TYPE).split(";", 1)[0].strip()
        document = FetchedDocument(
            content=response.content,
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            file_name=file_name_from_url(str(response.url)),
        )
        logger.info("[inference] fetched document name=%s bytes=%d", document.file_name, len(document.content))
        return document

    async def upload_document(self, document: FetchedDocument) -> str:
        """Register the document with the provider and return its file id."""
        try:
            uploaded = await self._openai_client().files.create(
                file=(document.file_name, document.content, document.content_type),
                purpose=self.file_purpose,
            )
        except openai.APIStatusError as exc:
            raise UploadError(exc.status_code, exc.message) from exc
        except openai.APIError as exc:
            raise UploadError(None, str(exc)) from exc
        file_id = getattr(uploaded, "id", None)
        if not file_id:
            raise UploadError(None, "provider response did not include a file id")
        logger.info("[inference] uploaded document file_id=%s purpose=%s", file_id, self.file_purpose)
        return file_id

    # -- step B: structured extraction -----------------------------------
    async def infer(self, file_id: str) -> str:
        """Ask the model to extract the receipt behind ``file_id``; returns raw text."""
        try:
            completion = await self._openai_client().chat.completions.create(
                model=self.model,
                max_completion_tokens=self.max_completion_tokens,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "file", "file": {"file_id": file_id}},
                            {"type": "text", "text": self.prompt},
                        ],
                    }
                ],
            )
        except openai.APIError as exc:
            raise InferenceError(f"Inference request failed: {exc}") from exc
        choices = getattr(completion, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text or not text.strip():
            raise InferenceError("Inference provider returned an empty reply")
        logger.info("[inference] completion received model=%s chars=%d", self.model, len(text))
        return text

    async def extract(self, document_url: str) -> str:
        """Fetch, upload and extract in one call; returns the raw model text."""
        document = await self.fetch_document(document_url)
        file_id = await self.upload_document(document)
        return await self.infer(file_id)


__all__ = ["InferenceClient", "FetchedDocument", "file_name_from_url"]
