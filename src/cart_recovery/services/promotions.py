"""Email preference checks and discount code issuance for recovery emails."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

import structlog
from sqlalchemy import insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cart_recovery.domain import CartIdentity, utcnow
from cart_recovery.infrastructure.database.models import AbandonedCart
from cart_recovery.infrastructure.database.storefront import (
    email_preferences,
    promotion_codes,
)
from shared.constants import (
    PREFERENCE_ABANDONED_CART,
    PREFERENCE_CATEGORIES,
    PREFERENCE_TRANSACTIONAL,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class PromotionCode:
    code: str
    expires_at: datetime | None = None


class PromotionService(Protocol):
    async def is_opted_in(
        self, identity: CartIdentity, email: str | None, category: str
    ) -> bool: ...

    async def issue_code(self, cart: AbandonedCart) -> PromotionCode: ...


class StorefrontPromotionService:
    """Reads the storefront's email preferences and registers codes with it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        prefix: str = "CART5",
        discount_percent: int = 5,
        valid_days: int = 10,
    ):
        self.session_factory = session_factory
        self.prefix = prefix
        self.discount_percent = discount_percent
        self.valid_days = valid_days

    async def is_opted_in(
        self, identity: CartIdentity, email: str | None, category: str
    ) -> bool:
        """
        Check whether ``email`` may receive mail of ``category``.

        Transactional mail is always allowed. Without a stored preference row
        only abandoned-cart reminders are allowed; everything else is opt-in.
        """
        if category not in PREFERENCE_CATEGORIES:
            raise ValueError(f"Unknown email preference category: {category}")
        if category == PREFERENCE_TRANSACTIONAL:
            return True
        if not email and not identity.user_id:
            return False

        matches = []
        if email:
            matches.append(email_preferences.c.email == email)
        if identity.user_id:
            matches.append(email_preferences.c.user_id == identity.user_id)

        column = email_preferences.c[category]
        query = select(column).where(or_(*matches)).limit(1)
        async with self.session_factory() as session:
            row = (await session.execute(query)).first()

        if row is None:
            return category == PREFERENCE_ABANDONED_CART
        return bool(row[0])

    def _generate_code(self) -> str:
        return f"{self.prefix}-{secrets.token_hex(4).upper()}"

    async def issue_code(self, cart: AbandonedCart) -> PromotionCode:
        """Mint a single-use percentage code tied to the cart's customer."""
        now = utcnow()
        code = PromotionCode(
            code=self._generate_code(),
            expires_at=now + timedelta(days=self.valid_days),
        )
        async with self.session_factory() as session, session.begin():
            await session.execute(
                insert(promotion_codes).values(
                    id=str(uuid4()),
                    code=code.code,
                    email=cart.customer_email,
                    user_id=cart.user_id,
                    discount_percent=self.discount_percent,
                    max_uses=1,
                    expires_at=code.expires_at,
                    created_at=now,
                )
            )

        logger.info(
            "Issued recovery promotion code",
            cart_id=cart.id,
            code=code.code,
            expires_at=code.expires_at.isoformat(),
        )
        return code
