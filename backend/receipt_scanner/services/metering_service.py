"""Entitlement and usage metering client (Schematic).

Plan limits and feature gating live in Schematic; this service only
reports usage and hands out short-lived tokens for the embedded billing
UI.  It talks to the REST API directly with ``httpx``.

Usage events are fire-and-forget from the product's point of view: the
extraction pipeline treats every ``MeteringError`` as non-fatal, so a
lost usage event never costs a user their extracted receipt.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from receipt_scanner.core.config import settings
from receipt_scanner.core.exceptions import MeteringError


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Schematic-Api-Key"


class MeteringClient:
    """Thin async wrapper around the entitlement service REST API."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 5.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.SCHEMATIC_API_KEY
        self.base_url = (base_url or settings.SCHEMATIC_API_URL).rstrip("/")
        self._http = http_client
        self._owns_http = http_client is None
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        return await self._client().post(
            f"{self.base_url}{path}",
            json=payload,
            headers={API_KEY_HEADER: self.api_key or ""},
        )

    async def track(self, event: str, company_id: str, user_id: str) -> bool:
        """Report one usage event.

        Returns ``False`` without a network call when no API key is
        configured; raises ``MeteringError`` when the service cannot be
        reached or rejects the event.
        """
        if not self.configured:
            logger.debug("[metering] SCHEMATIC_API_KEY not configured; skipping event=%s", event)
            return False
        payload = {
            "event_type": "track",
            "body": {
                "event": event,
                "company": {"id": company_id},
                "user": {"id": user_id},
            },
        }
        try:
            response = await self._post("/events", payload)
        except httpx.HTTPError as exc:
            raise MeteringError(f"track failed: {exc}") from exc
        if not response.is_success:
            raise MeteringError(f"track rejected: HTTP {response.status_code} {response.text[:200]}")
        return True

    async def issue_temporary_access_token(self, resource_type: str, lookup: Dict[str, str]) -> Optional[str]:
        """Return a temporary access token for the billing UI, or ``None``."""
        if not self.configured:
            return None
        try:
            response = await self._post(
                "/temporary-access-tokens",
                {"resource_type": resource_type, "lookup": lookup},
            )
            response.raise_for_status()
            data = response.json().get("data") or {}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("[metering] temporary access token request failed: %s", exc)
            return None
        token = data.get("token") if isinstance(data, dict) else None
        return token or None


__all__ = ["MeteringClient", "API_KEY_HEADER"]
