"""Abandoned cart detection task."""

import asyncio

import structlog
from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from cart_recovery.config import get_settings
from cart_recovery.jobs import recovery_runtime

logger = structlog.get_logger()


async def _detect() -> dict:
    async with recovery_runtime(get_settings(), use_tick_lock=False) as runtime:
        return await runtime.detector.run_once()


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def detect_abandoned_carts(self) -> dict:
    """
    Record carts that have gone idle as abandoned and snapshot their lines.

    A failed cart scan is retried; failures on single carts are already
    absorbed by the detector and show up in the returned summary.

    Returns:
        dict: Summary of processed carts
    """
    logger.info("Detecting abandoned carts")
    try:
        return asyncio.run(_detect())
    except SQLAlchemyError as e:
        logger.error("Abandoned cart scan failed", error=str(e))
        raise self.retry(exc=e)
