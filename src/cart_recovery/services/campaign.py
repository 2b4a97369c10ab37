"""Three-tier recovery email campaign."""

import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import structlog

from cart_recovery.domain import AttemptStatus, RecoveryTier, TierWindow, utcnow
from cart_recovery.infrastructure.database.models import AbandonedCart
from cart_recovery.services.cart_store import CartStore
from cart_recovery.services.email_delivery import (
    EmailSender,
    RecoveryEmail,
    RecoveryEmailItem,
)
from cart_recovery.services.promotions import PromotionCode, PromotionService
from cart_recovery.services.repository import AbandonedCartRepository
from shared.constants import (
    DEFAULT_CUSTOMER_NAME,
    EMAIL_DATE_FORMAT,
    PREFERENCE_PROMOTIONAL,
    PROMO_EXPIRY_FORMAT,
    PROMOTION_TIERS,
    RECOVERY_EMAIL_SUBJECTS,
    RECOVERY_EMAIL_TEMPLATES,
)

logger = structlog.get_logger()


class RecoveryCampaignScheduler:
    """
    Sends at most one email per (abandoned cart, tier).

    For each tier the scheduler selects open carts whose ``abandoned_at``
    lies inside the tier's window and that have no attempt for that tier,
    claims the attempt row, sends, and records the outcome. A failed send
    keeps its ``failed`` attempt and is not retried.

    A send cancelled by shutdown releases its claim so the tier can still
    go out later in its window. Claims orphaned by a killed worker stay
    ``pending`` until ``pending_grace`` has passed, then are settled as
    ``failed`` at the start of the next run.
    """

    def __init__(
        self,
        repository: AbandonedCartRepository,
        email_sender: EmailSender,
        windows: list[TierWindow],
        cart_store: CartStore | None = None,
        promotions: PromotionService | None = None,
        tracking_base_url: str = "http://localhost:8000/api/v1/tracking",
        max_concurrency: int = 8,
        pending_grace: timedelta = timedelta(minutes=30),
    ):
        self.repository = repository
        self.email_sender = email_sender
        self.windows = windows
        self.cart_store = cart_store
        self.promotions = promotions
        self.tracking_base_url = tracking_base_url.rstrip("/")
        self.max_concurrency = max_concurrency
        self.pending_grace = pending_grace

    async def run_once(self, now: datetime | None = None) -> dict:
        """Run every tier once; a failing tier does not stop the others."""
        now = now or utcnow()

        try:
            settled = await self.repository.fail_stale_pending(now - self.pending_grace)
            if settled:
                logger.warning("Settled interrupted recovery attempts as failed", count=settled)
        except Exception as e:
            logger.error("Failed to settle stale recovery attempts", error=str(e), exc_info=True)

        tiers = {}
        for window in self.windows:
            try:
                tiers[window.tier.value] = await self.run_tier(window, now)
            except Exception as e:
                logger.error(
                    "Recovery tier failed",
                    tier=window.tier.value,
                    error=str(e),
                    exc_info=True,
                )
                tiers[window.tier.value] = {"error": str(e)}

        logger.info("Recovery email run complete", tiers=tiers)
        return tiers

    async def run_tier(self, window: TierWindow, now: datetime) -> dict:
        carts = await self.repository.find_carts_needing_email(window, now)

        summary = {"eligible": len(carts), "sent": 0, "failed": 0, "skipped": 0, "errors": 0}
        if not carts:
            return summary

        logger.debug("Found carts needing recovery email", tier=window.tier.value, count=len(carts))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(cart: AbandonedCart) -> None:
            async with semaphore:
                try:
                    outcome = await self._process_cart(window.tier, cart, now)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error(
                        "Failed to process recovery email",
                        cart_id=cart.id,
                        tier=window.tier.value,
                        error=str(e),
                        exc_info=True,
                    )
                    return
                summary[outcome] += 1

        await asyncio.gather(*(bounded(cart) for cart in carts))
        return summary

    async def _process_cart(
        self, tier: RecoveryTier, cart: AbandonedCart, now: datetime
    ) -> str:
        token = uuid4().hex
        subject = RECOVERY_EMAIL_SUBJECTS[tier.value]

        attempt_id = await self.repository.claim_attempt(cart.id, tier, token, subject, now)
        if attempt_id is None:
            # Another scheduler got there first
            return "skipped"

        try:
            promotion = await self._resolve_promotion(tier, cart, now)
            message = self._build_message(tier, cart, token, subject, promotion)
            result = await self.email_sender.send_email(message)
            if not result.get("success"):
                raise RuntimeError(result.get("error") or "email provider reported failure")
        except asyncio.CancelledError:
            # Shutdown cut the send short; give the tier back for the next tick
            await asyncio.shield(self.repository.release_attempt(attempt_id))
            logger.warning(
                "Recovery email send cancelled, claim released",
                cart_id=cart.id,
                tier=tier.value,
            )
            raise
        except Exception as e:
            logger.error(
                "Failed to send recovery email",
                cart_id=cart.id,
                tier=tier.value,
                error=str(e),
            )
            await self.repository.complete_attempt(
                attempt_id, AttemptStatus.FAILED, error_message=str(e)[:1000]
            )
            return "failed"

        await self.repository.complete_attempt(attempt_id, AttemptStatus.SENT, sent_at=utcnow())
        await self.repository.mark_contacted(cart.id, now)

        logger.info(
            "Sent recovery email",
            cart_id=cart.id,
            tier=tier.value,
            email=cart.customer_email,
        )
        return "sent"

    async def _resolve_promotion(
        self, tier: RecoveryTier, cart: AbandonedCart, now: datetime
    ) -> PromotionCode | None:
        """Find or mint a discount code; any failure just means no code."""
        if tier.value not in PROMOTION_TIERS or self.promotions is None:
            return None

        try:
            opted_in = await self.promotions.is_opted_in(
                cart.identity, cart.customer_email, PREFERENCE_PROMOTIONAL
            )
            if not opted_in:
                return None

            if cart.promotion_code and (
                cart.promotion_code_expires_at is None or cart.promotion_code_expires_at > now
            ):
                return PromotionCode(cart.promotion_code, cart.promotion_code_expires_at)

            # Codes are a first-order incentive only
            if self.cart_store is not None and await self.cart_store.has_purchased(
                cart.identity, cart.customer_email
            ):
                return None

            promotion = await self.promotions.issue_code(cart)
            await self.repository.attach_promotion_code(
                cart.id, promotion.code, promotion.expires_at
            )
            return promotion
        except Exception as e:
            logger.warning(
                "Promotion code unavailable, sending without it",
                cart_id=cart.id,
                tier=tier.value,
                error=str(e),
            )
            return None

    def _build_message(
        self,
        tier: RecoveryTier,
        cart: AbandonedCart,
        token: str,
        subject: str,
        promotion: PromotionCode | None,
    ) -> RecoveryEmail:
        items = [
            RecoveryEmailItem(
                product_name=snapshot.product_name,
                quantity=snapshot.quantity,
                unit_price_cents=snapshot.unit_price_cents,
                total_price_cents=snapshot.total_price_cents,
                product_image_url=snapshot.product_image_url,
            )
            for snapshot in cart.snapshots
        ]

        promo_expires = None
        if promotion and promotion.expires_at:
            promo_expires = promotion.expires_at.strftime(PROMO_EXPIRY_FORMAT)

        return RecoveryEmail(
            to_email=cart.customer_email,
            subject=subject,
            tier=tier,
            template_name=RECOVERY_EMAIL_TEMPLATES[tier.value],
            customer_name=cart.customer_name or DEFAULT_CUSTOMER_NAME,
            cart_value_cents=cart.cart_value_cents,
            item_count=cart.item_count,
            abandoned_at=cart.abandoned_at.strftime(EMAIL_DATE_FORMAT),
            tracking_token=token,
            open_tracking_url=f"{self.tracking_base_url}/{token}/open",
            recovery_url=f"{self.tracking_base_url}/{token}/click",
            items=items,
            promo_code=promotion.code if promotion else None,
            promo_expires=promo_expires,
        )
