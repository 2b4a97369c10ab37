"""Retention policy for abandoned cart records."""

from datetime import datetime, timedelta

import structlog

from cart_recovery.domain import utcnow
from cart_recovery.services.repository import AbandonedCartRepository

logger = structlog.get_logger()


class RetentionSweeper:
    """
    Expires long-idle open carts and purges old expired ones.

    Recovered carts are never touched here. Both steps are idempotent and
    run independently: a failure in one is logged and the other still runs.
    """

    def __init__(
        self,
        repository: AbandonedCartRepository,
        expire_after: timedelta = timedelta(days=30),
        delete_after: timedelta = timedelta(days=90),
    ):
        if delete_after < expire_after:
            raise ValueError("delete_after must not be shorter than expire_after")
        self.repository = repository
        self.expire_after = expire_after
        self.delete_after = delete_after

    async def run_once(self, now: datetime | None = None) -> dict:
        now = now or utcnow()
        summary: dict = {"expired": 0, "deleted": 0, "errors": 0}

        try:
            summary["expired"] = await self.repository.expire_stale(now - self.expire_after)
        except Exception as e:
            summary["errors"] += 1
            logger.error("Failed to expire abandoned carts", error=str(e), exc_info=True)

        try:
            summary["deleted"] = await self.repository.delete_expired(now - self.delete_after)
        except Exception as e:
            summary["errors"] += 1
            logger.error("Failed to delete expired abandoned carts", error=str(e), exc_info=True)

        logger.info("Abandoned cart cleanup complete", **summary)
        return summary
