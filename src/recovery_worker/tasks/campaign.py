"""Recovery email campaign task."""

import asyncio

import structlog
from celery import shared_task

from cart_recovery.config import get_settings
from cart_recovery.jobs import recovery_runtime

logger = structlog.get_logger()


async def _send() -> dict:
    async with recovery_runtime(get_settings(), use_tick_lock=False) as runtime:
        return await runtime.campaign.run_once()


@shared_task(bind=True)
def send_recovery_emails(self) -> dict:
    """
    Send the 1hr, 24hr and 72hr recovery emails that are due.

    Not retried: a late rerun could fall outside a tier's window, and the
    next scheduled run picks up anything still eligible.

    Returns:
        dict: Per-tier summary of sent, failed and skipped carts
    """
    logger.info("Sending recovery emails")
    return asyncio.run(_send())
