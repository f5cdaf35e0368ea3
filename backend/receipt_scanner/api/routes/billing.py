from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from receipt_scanner.api.dependencies import get_current_subject, get_metering
from receipt_scanner.core.observability import sentry_breadcrumb
from receipt_scanner.models.schemas import AccessTokenResponse
from receipt_scanner.services.metering_service import MeteringClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

# Billing accounts are keyed by the same subject id that owns receipts.
COMPANY_RESOURCE_TYPE = "company"


@router.get("/access-token", response_model=AccessTokenResponse)
async def get_access_token(
    subject: str = Depends(get_current_subject),
    metering: MeteringClient = Depends(get_metering),
) -> AccessTokenResponse:
    """Temporary access token for the embedded billing and usage UI.

    ``token`` is ``null`` when entitlements are not configured or the
    service could not issue one; the frontend hides the billing panel then.
    """
    token = await metering.issue_temporary_access_token(COMPANY_RESOURCE_TYPE, {"id": subject})
    sentry_breadcrumb(category="billing", message="access_token", data={"issued": token is not None})
    if token is None:
        logger.info("no billing access token issued for subject=%s", subject)
    return AccessTokenResponse(token=token)
