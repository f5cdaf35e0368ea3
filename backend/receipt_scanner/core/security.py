"""Authentication of API requests against Clerk-issued JWTs.

The API only needs the authenticated *subject*: receipts are owned by
the Clerk user id (``sub`` claim) and there is no local user table.
Tokens are verified against the instance JWKS (fetched with
``requests`` and cached in memory); ``aud`` and ``iss`` are checked
when ``CLERK_JWT_AUDIENCE`` / ``CLERK_JWT_ISSUER`` are configured.

Set ``DEV_AUTH_BYPASS=true`` for local development to skip token
verification entirely; every request then acts as ``DEV_SUBJECT``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import requests
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from receipt_scanner.core.config import settings


logger = logging.getLogger(__name__)

DEV_SUBJECT = "dev_user"

auth_scheme = HTTPBearer(auto_error=False)

# JWKS cache; cleared when a token names an unknown key id (key rotation).
_clerk_jwks: Optional[Dict] = None


def get_clerk_jwks(force_refresh: bool = False) -> Dict:
    """Fetch and cache the JWKS used to verify Clerk tokens."""
    global _clerk_jwks
    if _clerk_jwks is not None and not force_refresh:
        return _clerk_jwks
    if not settings.CLERK_JWKS_URL:
        raise HTTPException(status_code=500, detail="CLERK_JWKS_URL is not configured")
    try:
        resp = requests.get(settings.CLERK_JWKS_URL, timeout=5)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"Failed to fetch JWKS: {exc}") from exc
    if not isinstance(data, dict) or "keys" not in data:
        raise HTTPException(status_code=500, detail="Invalid JWKS payload from Clerk")
    _clerk_jwks = data
    return data


def _find_key(jwks: Dict, kid: str) -> Optional[Dict]:
    return next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)


def decode_clerk_jwt(token: str) -> Dict:
    """Verify a Clerk JWT and return its claims; raises 401 when invalid."""
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid token header: {exc}") from exc
    kid = header.get("kid")
    if not kid:
        raise HTTPException(status_code=401, detail="Invalid Clerk token: missing kid header")
    key = _find_key(get_clerk_jwks(), kid)
    if key is None:
        key = _find_key(get_clerk_jwks(force_refresh=True), kid)
        if key is None:
            raise HTTPException(status_code=401, detail="Unknown signing key (kid) for Clerk token")

    decode_kwargs: Dict = {"algorithms": ["RS256"], "options": {}}
    if settings.CLERK_JWT_AUDIENCE:
        decode_kwargs["audience"] = settings.CLERK_JWT_AUDIENCE
    else:
        decode_kwargs["options"]["verify_aud"] = False
    if settings.CLERK_JWT_ISSUER:
        decode_kwargs["issuer"] = settings.CLERK_JWT_ISSUER
    try:
        return jwt.decode(token, key, **decode_kwargs)
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid Clerk token: {exc}") from exc


def subject_from_token(token: Optional[str]) -> str:
    """Return the subject for a raw bearer token (used where headers are unavailable)."""
    if settings.DEV_AUTH_BYPASS:
        return DEV_SUBJECT
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing auth token")
    claims = decode_clerk_jwt(token)
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Invalid Clerk token: no sub claim")
    return subject


async def get_current_subject(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> str:
    """FastAPI dependency resolving the authenticated subject id."""
    return subject_from_token(credentials.credentials if credentials else None)


__all__ = ["DEV_SUBJECT", "decode_clerk_jwt", "get_clerk_jwks", "get_current_subject", "subject_from_token"]
