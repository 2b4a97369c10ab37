"""Unit tests for email preferences and promotion codes."""

import re
from datetime import timedelta

import pytest
from sqlalchemy import insert, select

from cart_recovery.domain import CartIdentity, utcnow
from cart_recovery.infrastructure.database.storefront import email_preferences, promotion_codes
from cart_recovery.services.promotions import StorefrontPromotionService


@pytest.fixture
def service(session_factory) -> StorefrontPromotionService:
    return StorefrontPromotionService(session_factory, prefix="CART5", discount_percent=5, valid_days=10)


class TestPreferenceDefaults:
    """Without a stored row only abandoned-cart reminders are allowed."""

    @pytest.mark.asyncio
    async def test_no_row(self, service, guest) -> None:
        assert await service.is_opted_in(guest, "new@example.com", "abandoned_cart") is True
        assert await service.is_opted_in(guest, "new@example.com", "promotional") is False
        assert await service.is_opted_in(guest, "new@example.com", "newsletter") is False

    @pytest.mark.asyncio
    async def test_transactional_always_allowed(self, service, guest) -> None:
        assert await service.is_opted_in(guest, None, "transactional") is True

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, service, guest) -> None:
        with pytest.raises(ValueError):
            await service.is_opted_in(guest, "a@example.com", "sms")


class TestStoredPreferences:
    @pytest.mark.asyncio
    async def test_row_matched_by_email(self, service, session_factory, guest) -> None:
        async with session_factory() as session, session.begin():
            await session.execute(
                insert(email_preferences).values(
                    id="pref-1", email="fan@example.com", promotional=True, abandoned_cart=False
                )
            )

        assert await service.is_opted_in(guest, "fan@example.com", "promotional") is True
        assert await service.is_opted_in(guest, "fan@example.com", "abandoned_cart") is False

    @pytest.mark.asyncio
    async def test_row_matched_by_user(self, service, session_factory) -> None:
        async with session_factory() as session, session.begin():
            await session.execute(
                insert(email_preferences).values(
                    id="pref-2", user_id="u-9", email="old@example.com", promotional=True
                )
            )

        identity = CartIdentity.for_user("u-9")
        assert await service.is_opted_in(identity, "changed@example.com", "promotional") is True


class TestIssueCode:
    @pytest.mark.asyncio
    async def test_code_registered_with_storefront(self, service, repository, session_factory, t0) -> None:
        cart = await repository.create_if_absent(
            CartIdentity.for_user("u-1"),
            abandoned_at=t0,
            cart_value_cents=1000,
            item_count=1,
            customer_email="ada@example.com",
        )
        before = utcnow()

        code = await service.issue_code(cart)

        assert re.fullmatch(r"CART5-[0-9A-F]{8}", code.code)
        assert before + timedelta(days=10) <= code.expires_at <= utcnow() + timedelta(days=10)
        async with session_factory() as session:
            row = (
                await session.execute(select(promotion_codes).where(promotion_codes.c.code == code.code))
            ).one()
        assert row.email == "ada@example.com"
        assert row.user_id == "u-1"
        assert row.discount_percent == 5
        assert row.max_uses == 1
