"""Back-office endpoints for browsing and managing abandoned carts."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from cart_recovery.api.deps import get_analytics, get_repository
from cart_recovery.domain import AttemptStatus, CartStatus, RecoveryMethod, RecoveryTier
from cart_recovery.services.analytics import RecoveryAnalyticsService
from cart_recovery.services.repository import AbandonedCartRepository
from shared.constants import (
    DEFAULT_ANALYTICS_DAYS,
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    TOP_PRODUCTS_LIMIT,
)

router = APIRouter()


# =============================================================================
# Response Models
# =============================================================================


class AbandonedCartSummary(BaseModel):
    """Abandoned cart as shown in listings."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    session_id: str | None
    user_id: str | None
    customer_email: str | None
    customer_name: str | None
    cart_value_cents: int
    item_count: int
    abandoned_at: datetime
    status: CartStatus
    recovered_at: datetime | None
    recovery_method: RecoveryMethod | None
    last_contacted_at: datetime | None
    promotion_code: str | None
    notes: str | None


class CartSnapshotItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    product_name: str
    product_sku: str | None
    product_image_url: str | None
    quantity: int
    unit_price_cents: int
    total_price_cents: int


class RecoveryAttemptItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tier: RecoveryTier
    status: AttemptStatus
    email_subject: str | None
    sent_at: datetime
    opened_at: datetime | None
    clicked_at: datetime | None
    error_message: str | None


class AbandonedCartDetail(AbandonedCartSummary):
    """Abandoned cart with its frozen line items and email history."""

    promotion_code_expires_at: datetime | None
    snapshots: list[CartSnapshotItem]
    attempts: list[RecoveryAttemptItem]


class AbandonedCartListResponse(BaseModel):
    carts: list[AbandonedCartSummary]
    total: int
    limit: int
    offset: int


class TierPerformance(BaseModel):
    tier: RecoveryTier
    attempts: int
    sent: int
    opened: int
    clicked: int
    bounced: int
    failed: int
    open_rate_percent: float
    click_rate_percent: float


class TopProduct(BaseModel):
    product_id: str
    product_name: str
    cart_count: int
    quantity: int
    value_cents: int


class RecoveryStatsResponse(BaseModel):
    """Recovery funnel for carts abandoned within the period."""

    period_days: int
    total_abandoned: int
    active: int
    contacted: int
    recovered: int
    expired: int
    recovery_rate_percent: float
    total_value_cents: int
    recovered_value_cents: int
    email_performance: list[TierPerformance]
    top_products: list[TopProduct]


class NotesRequest(BaseModel):
    notes: str | None = Field(None, max_length=10000)


class ManualRecoverRequest(BaseModel):
    method: RecoveryMethod = RecoveryMethod.MANUAL


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=AbandonedCartListResponse)
async def list_abandoned_carts(
    status: Annotated[CartStatus | None, Query(description="Filter by status")] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_LIST_LIMIT)] = DEFAULT_LIST_LIMIT,
    offset: Annotated[int, Query(ge=0)] = 0,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> AbandonedCartListResponse:
    """List abandoned carts, most recently abandoned first."""
    carts, total = await repository.list_carts(status=status, limit=limit, offset=offset)
    return AbandonedCartListResponse(
        carts=[AbandonedCartSummary.model_validate(cart) for cart in carts],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=RecoveryStatsResponse)
async def get_recovery_stats(
    days: Annotated[int, Query(ge=1, le=365)] = DEFAULT_ANALYTICS_DAYS,
    analytics: RecoveryAnalyticsService = Depends(get_analytics),
) -> RecoveryStatsResponse:
    """
    Recovery funnel over the last ``days`` days.

    Includes per-tier email engagement and the products most often left
    behind in abandoned carts.
    """
    summary = await analytics.get_summary(days=days)
    performance = await analytics.get_email_performance(days=days)
    top_products = await analytics.get_top_products(days=days, limit=TOP_PRODUCTS_LIMIT)

    return RecoveryStatsResponse(
        period_days=days,
        total_abandoned=summary.total_abandoned,
        active=summary.active,
        contacted=summary.contacted,
        recovered=summary.recovered,
        expired=summary.expired,
        recovery_rate_percent=summary.recovery_rate_percent,
        total_value_cents=summary.total_value_cents,
        recovered_value_cents=summary.recovered_value_cents,
        email_performance=[TierPerformance(**row) for row in performance],
        top_products=[TopProduct(**row) for row in top_products],
    )


@router.get("/{cart_id}", response_model=AbandonedCartDetail)
async def get_abandoned_cart(
    cart_id: int,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> AbandonedCartDetail:
    cart = await repository.get_cart_detail(cart_id)
    if cart is None:
        raise HTTPException(status_code=404, detail="Abandoned cart not found")
    return AbandonedCartDetail.model_validate(cart)


@router.patch("/{cart_id}/notes", response_model=AbandonedCartSummary)
async def update_notes(
    cart_id: int,
    request: NotesRequest,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> AbandonedCartSummary:
    cart = await repository.update_notes(cart_id, request.notes)
    if cart is None:
        raise HTTPException(status_code=404, detail="Abandoned cart not found")
    return AbandonedCartSummary.model_validate(cart)


@router.post("/{cart_id}/recover", response_model=AbandonedCartSummary)
async def recover_abandoned_cart(
    cart_id: int,
    request: ManualRecoverRequest | None = None,
    repository: AbandonedCartRepository = Depends(get_repository),
) -> AbandonedCartSummary:
    """
    Mark a cart recovered from the back office.

    Already recovered carts are returned unchanged; expired carts cannot be
    recovered (409).
    """
    method = request.method if request else RecoveryMethod.MANUAL
    cart = await repository.mark_recovered_by_id(cart_id, method=method)
    if cart is None:
        raise HTTPException(status_code=404, detail="Abandoned cart not found")
    if cart.status == CartStatus.EXPIRED:
        raise HTTPException(status_code=409, detail="Expired carts cannot be recovered")
    return AbandonedCartSummary.model_validate(cart)
