"""Abandoned cart retention task."""

import asyncio

import structlog
from celery import shared_task

from cart_recovery.config import get_settings
from cart_recovery.jobs import recovery_runtime

logger = structlog.get_logger()


async def _sweep() -> dict:
    async with recovery_runtime(get_settings(), use_tick_lock=False) as runtime:
        return await runtime.sweeper.run_once()


@shared_task(bind=True, max_retries=3, default_retry_delay=300)
def sweep_abandoned_carts(self) -> dict:
    """
    Expire open carts past the expiry age and delete old expired carts.

    Returns:
        dict: Counts of expired and deleted carts
    """
    logger.info("Sweeping abandoned carts")
    summary = asyncio.run(_sweep())
    if summary["errors"] and self.request.retries < self.max_retries:
        raise self.retry()
    return summary
