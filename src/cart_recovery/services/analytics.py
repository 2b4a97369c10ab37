"""Recovery funnel reporting over abandoned carts and recovery attempts."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cart_recovery.domain import AttemptStatus, CartStatus, RecoveryTier, utcnow
from cart_recovery.infrastructure.database.models import (
    AbandonedCart,
    CartSnapshot,
    RecoveryAttempt,
)

logger = structlog.get_logger()


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


@dataclass
class RecoverySummary:
    total_abandoned: int
    active: int
    contacted: int
    recovered: int
    expired: int
    total_value_cents: int
    recovered_value_cents: int
    since: datetime

    @property
    def recovery_rate_percent(self) -> float:
        return _percent(self.recovered, self.total_abandoned)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_abandoned": self.total_abandoned,
            "active": self.active,
            "contacted": self.contacted,
            "recovered": self.recovered,
            "expired": self.expired,
            "recovery_rate_percent": self.recovery_rate_percent,
            "total_value_cents": self.total_value_cents,
            "recovered_value_cents": self.recovered_value_cents,
            "since": self.since.isoformat(),
        }


class RecoveryAnalyticsService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_summary(self, days: int = 30, now: datetime | None = None) -> RecoverySummary:
        """Counts and value of carts abandoned in the last ``days`` days."""
        since = (now or utcnow()) - timedelta(days=days)
        status = AbandonedCart.status
        query = select(
            func.count(AbandonedCart.id).label("total"),
            _count_where(status == CartStatus.ACTIVE).label("active"),
            _count_where(status == CartStatus.CONTACTED).label("contacted"),
            _count_where(status == CartStatus.RECOVERED).label("recovered"),
            _count_where(status == CartStatus.EXPIRED).label("expired"),
            func.coalesce(func.sum(AbandonedCart.cart_value_cents), 0).label("total_value"),
            func.coalesce(
                func.sum(
                    case(
                        (status == CartStatus.RECOVERED, AbandonedCart.cart_value_cents),
                        else_=0,
                    )
                ),
                0,
            ).label("recovered_value"),
        ).where(AbandonedCart.abandoned_at >= since)

        async with self.session_factory() as session:
            row = (await session.execute(query)).one()

        return RecoverySummary(
            total_abandoned=int(row.total),
            active=int(row.active),
            contacted=int(row.contacted),
            recovered=int(row.recovered),
            expired=int(row.expired),
            total_value_cents=int(row.total_value),
            recovered_value_cents=int(row.recovered_value),
            since=since,
        )

    async def get_email_performance(
        self, days: int = 30, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Delivery and engagement per tier for attempts made in the last ``days`` days."""
        since = (now or utcnow()) - timedelta(days=days)
        status = RecoveryAttempt.status
        query = (
            select(
                RecoveryAttempt.tier,
                func.count(RecoveryAttempt.id).label("attempts"),
                _count_where(
                    status.in_(
                        (
                            AttemptStatus.SENT,
                            AttemptStatus.OPENED,
                            AttemptStatus.CLICKED,
                            AttemptStatus.BOUNCED,
                        )
                    )
                ).label("sent"),
                func.count(RecoveryAttempt.opened_at).label("opened"),
                func.count(RecoveryAttempt.clicked_at).label("clicked"),
                _count_where(status == AttemptStatus.BOUNCED).label("bounced"),
                _count_where(status == AttemptStatus.FAILED).label("failed"),
            )
            .where(RecoveryAttempt.sent_at >= since)
            .group_by(RecoveryAttempt.tier)
        )

        async with self.session_factory() as session:
            rows = {row.tier: row for row in (await session.execute(query)).all()}

        performance = []
        for tier in RecoveryTier:
            row = rows.get(tier)
            sent = int(row.sent) if row else 0
            opened = int(row.opened) if row else 0
            clicked = int(row.clicked) if row else 0
            performance.append(
                {
                    "tier": tier.value,
                    "attempts": int(row.attempts) if row else 0,
                    "sent": sent,
                    "opened": opened,
                    "clicked": clicked,
                    "bounced": int(row.bounced) if row else 0,
                    "failed": int(row.failed) if row else 0,
                    "open_rate_percent": _percent(opened, sent),
                    "click_rate_percent": _percent(clicked, sent),
                }
            )
        return performance

    async def get_top_products(
        self, days: int = 30, limit: int = 10, now: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Products most often left behind, from the frozen snapshots."""
        since = (now or utcnow()) - timedelta(days=days)
        cart_count = func.count(func.distinct(CartSnapshot.abandoned_cart_id))
        query = (
            select(
                CartSnapshot.product_id,
                func.max(CartSnapshot.product_name).label("product_name"),
                cart_count.label("cart_count"),
                func.sum(CartSnapshot.quantity).label("quantity"),
                func.sum(CartSnapshot.total_price_cents).label("value_cents"),
            )
            .join(AbandonedCart, CartSnapshot.abandoned_cart_id == AbandonedCart.id)
            .where(AbandonedCart.abandoned_at >= since)
            .group_by(CartSnapshot.product_id)
            .order_by(cart_count.desc(), CartSnapshot.product_id)
            .limit(limit)
        )

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()

        return [
            {
                "product_id": r.product_id,
                "product_name": r.product_name,
                "cart_count": int(r.cart_count),
                "quantity": int(r.quantity or 0),
                "value_cents": int(r.value_cents or 0),
            }
            for r in rows
        ]
