"""Detection of newly abandoned carts.

Each tick scans the storefront's live carts for identities that have been
idle longer than the abandonment threshold, records one abandonment per
identity and freezes the cart's current lines as snapshots.
"""

import asyncio
from datetime import datetime, timedelta

import structlog

from cart_recovery.domain import utcnow
from cart_recovery.services.cart_store import CartStore, InactiveCart
from cart_recovery.services.repository import AbandonedCartRepository

logger = structlog.get_logger()


class CartDetector:
    """Turns idle storefront carts into ``AbandonedCart`` records."""

    def __init__(
        self,
        repository: AbandonedCartRepository,
        cart_store: CartStore,
        threshold: timedelta = timedelta(minutes=30),
        lookback: timedelta | None = timedelta(days=30),
        max_concurrency: int = 8,
    ):
        self.repository = repository
        self.cart_store = cart_store
        self.threshold = threshold
        self.lookback = lookback
        self.max_concurrency = max_concurrency

    async def run_once(self, now: datetime | None = None) -> dict:
        """
        Run one detection tick.

        A failure reading the cart scan propagates to the caller; failures
        for individual identities are logged and counted.

        Returns:
            Summary with ``processed``, ``created``, ``skipped``, ``snapshots``
            and ``errors`` counts.
        """
        now = now or utcnow()
        idle_since = now - self.threshold
        modified_after = now - self.lookback if self.lookback else None

        inactive = await self.cart_store.find_inactive_carts(idle_since, modified_after)

        summary = {
            "processed": len(inactive),
            "created": 0,
            "skipped": 0,
            "snapshots": 0,
            "errors": 0,
        }
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(cart: InactiveCart) -> None:
            async with semaphore:
                try:
                    outcome, snapshots = await self._process_cart(cart)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error(
                        "Failed to process inactive cart",
                        error=str(e),
                        exc_info=True,
                        **cart.identity.log_context(),
                    )
                    return
                summary[outcome] += 1
                summary["snapshots"] += snapshots

        await asyncio.gather(*(bounded(cart) for cart in inactive))

        logger.info("Abandoned cart detection complete", **summary)
        return summary

    async def _process_cart(self, cart: InactiveCart) -> tuple[str, int]:
        identity = cart.identity

        latest = await self.repository.get_latest_for_identity(identity)
        if latest is not None and (
            latest.is_open or latest.abandoned_at >= cart.last_modified_at
        ):
            # Already tracked, or closed with no cart activity since
            return "skipped", 0

        email = name = None
        try:
            customer = await self.cart_store.get_customer(identity)
        except Exception as e:
            customer = None
            logger.warning(
                "Customer lookup failed, continuing without contact details",
                error=str(e),
                **identity.log_context(),
            )
        if customer is not None:
            email, name = customer.email, customer.name

        created = await self.repository.create_if_absent(
            identity,
            abandoned_at=cart.last_modified_at,
            cart_value_cents=cart.cart_value_cents,
            item_count=cart.item_count,
            customer_email=email,
            customer_name=name,
        )
        if created is None:
            return "skipped", 0

        logger.info(
            "Abandoned cart detected",
            cart_id=created.id,
            cart_value_cents=created.cart_value_cents,
            item_count=created.item_count,
            abandoned_at=created.abandoned_at.isoformat(),
            **identity.log_context(),
        )

        # The record stands even if the snapshot cannot be taken
        try:
            lines = await self.cart_store.get_cart_lines(identity)
            snapshots = await self.repository.add_snapshots(created.id, lines)
        except Exception as e:
            logger.error(
                "Failed to snapshot abandoned cart",
                cart_id=created.id,
                error=str(e),
                exc_info=True,
                **identity.log_context(),
            )
            snapshots = 0

        return "created", snapshots
