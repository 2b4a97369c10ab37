"""Open, click and bounce callbacks for recovery emails.

These endpoints are hit by mail clients and the email provider, so they
answer the same way whether or not the token is known.
"""

import base64

import structlog
from fastapi import APIRouter, Depends, Response
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from cart_recovery.api.deps import get_repository
from cart_recovery.config import Settings, get_settings
from cart_recovery.services.repository import AbandonedCartRepository

router = APIRouter()
logger = structlog.get_logger()

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}


class BounceRequest(BaseModel):
    reason: str | None = None


class TrackingResponse(BaseModel):
    recorded: bool


@router.get("/{token}/open")
async def track_open(
    token: str,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> Response:
    """Record the first open of a recovery email and return a tracking pixel."""
    try:
        recorded = await repository.record_open(token)
        logger.debug("Email open tracked", tracking_token=token, recorded=recorded)
    except SQLAlchemyError as e:
        logger.error("Failed to record email open", tracking_token=token, error=str(e))

    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/{token}/click")
async def track_click(
    token: str,
    repository: AbandonedCartRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Record the first click of a recovery email and send the customer to their cart."""
    try:
        recorded = await repository.record_click(token)
        logger.debug("Email click tracked", tracking_token=token, recorded=recorded)
    except SQLAlchemyError as e:
        logger.error("Failed to record email click", tracking_token=token, error=str(e))

    return RedirectResponse(url=settings.storefront_cart_url, status_code=307)


@router.post("/{token}/bounce", response_model=TrackingResponse)
async def track_bounce(
    token: str,
    request: BounceRequest | None = None,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> TrackingResponse:
    """Mark a delivered recovery email as bounced (provider webhook)."""
    reason = request.reason if request else None
    recorded = await repository.record_bounce(token, reason=reason)
    if recorded:
        logger.info("Recovery email bounced", tracking_token=token, reason=reason)
    return TrackingResponse(recorded=recorded)
