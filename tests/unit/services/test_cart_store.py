"""Unit tests for the storefront-backed cart store."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import delete, insert

from cart_recovery.domain import CartIdentity
from cart_recovery.infrastructure.database.storefront import (
    cart_items,
    orders,
    product_images,
    product_variants,
    products,
    users,
)
from cart_recovery.services.cart_store import SqlCartStore

NOW = datetime(2026, 3, 2, 12, 0, 0)


@pytest_asyncio.fixture
async def storefront(session_factory):
    """Catalog, two customers and a few live carts."""
    async with session_factory() as session, session.begin():
        await session.execute(
            insert(products),
            [
                {"id": "p-mug", "name": "Mug", "sku": "MUG-1", "price_cents": 1200},
                {"id": "p-tee", "name": "T-Shirt", "sku": "TEE", "price_cents": 2000},
                {"id": "p-pin", "name": "Pin", "sku": None, "price_cents": 300},
            ],
        )
        await session.execute(
            insert(product_variants),
            [{"id": "v-tee-l", "product_id": "p-tee", "name": "Large", "sku": "TEE-L", "price_cents": 2200}],
        )
        await session.execute(
            insert(product_images),
            [
                {"id": "i1", "product_id": "p-mug", "image_url": "https://cdn/mug-side.jpg", "is_primary": False},
                {"id": "i2", "product_id": "p-mug", "image_url": "https://cdn/mug.jpg", "is_primary": True},
            ],
        )
        await session.execute(
            insert(users),
            [{"id": "u-1", "email": "ada@example.com", "full_name": "Ada Lovelace"}],
        )
        await session.execute(
            insert(cart_items),
            [
                # Guest cart idle for two hours
                {"id": "c1", "session_id": "sess-1", "user_id": None, "product_id": "p-mug", "product_variant_id": None, "quantity": 2,
                 "created_at": NOW - timedelta(hours=3), "updated_at": NOW - timedelta(hours=3)},
                {"id": "c2", "session_id": "sess-1", "user_id": None, "product_id": "p-tee", "product_variant_id": "v-tee-l",
                 "quantity": 1, "created_at": NOW - timedelta(hours=2), "updated_at": NOW - timedelta(hours=2)},
                # User cart with one line touched recently
                {"id": "c3", "session_id": None, "user_id": "u-1", "product_id": "p-pin", "product_variant_id": None, "quantity": 1,
                 "created_at": NOW - timedelta(hours=5), "updated_at": NOW - timedelta(hours=5)},
                {"id": "c4", "session_id": None, "user_id": "u-1", "product_id": "p-mug", "product_variant_id": None, "quantity": 1,
                 "created_at": NOW - timedelta(minutes=10), "updated_at": NOW - timedelta(minutes=10)},
                # Guest cart with only a zero-quantity line
                {"id": "c5", "session_id": "sess-empty", "user_id": None, "product_id": "p-pin", "product_variant_id": None, "quantity": 0,
                 "created_at": NOW - timedelta(hours=4), "updated_at": NOW - timedelta(hours=4)},
                # Guest cart untouched for two months
                {"id": "c6", "session_id": "sess-old", "user_id": None, "product_id": "p-pin", "product_variant_id": None, "quantity": 1,
                 "created_at": NOW - timedelta(days=60), "updated_at": NOW - timedelta(days=60)},
            ],
        )
    return SqlCartStore(session_factory)


class TestFindInactiveCarts:
    @pytest.mark.asyncio
    async def test_groups_by_identity_using_latest_modification(self, storefront) -> None:
        carts = await storefront.find_inactive_carts(NOW - timedelta(minutes=30))
        by_identity = {c.identity: c for c in carts}

        guest = by_identity[CartIdentity.for_session("sess-1")]
        assert guest.item_count == 2
        assert guest.cart_value_cents == 2 * 1200 + 2200
        assert guest.last_modified_at == NOW - timedelta(hours=2)

        # The user's newest line is only ten minutes old
        assert CartIdentity.for_user("u-1") not in by_identity

    @pytest.mark.asyncio
    async def test_skips_empty_carts(self, storefront) -> None:
        carts = await storefront.find_inactive_carts(NOW - timedelta(minutes=30))
        assert CartIdentity.for_session("sess-empty") not in {c.identity for c in carts}

    @pytest.mark.asyncio
    async def test_lookback_excludes_ancient_carts(self, storefront) -> None:
        idle_since = NOW - timedelta(minutes=30)
        everything = await storefront.find_inactive_carts(idle_since)
        recent = await storefront.find_inactive_carts(idle_since, NOW - timedelta(days=30))

        assert CartIdentity.for_session("sess-old") in {c.identity for c in everything}
        assert CartIdentity.for_session("sess-old") not in {c.identity for c in recent}

    @pytest.mark.asyncio
    async def test_user_cart_found_once_fully_idle(self, storefront) -> None:
        carts = await storefront.find_inactive_carts(NOW)
        user_cart = next(c for c in carts if c.identity == CartIdentity.for_user("u-1"))
        assert user_cart.item_count == 2
        assert user_cart.cart_value_cents == 300 + 1200


class TestCartLines:
    @pytest.mark.asyncio
    async def test_lines_carry_variant_details_and_primary_image(self, storefront) -> None:
        lines = await storefront.get_cart_lines(CartIdentity.for_session("sess-1"))

        assert [line.product_name for line in lines] == ["Mug", "T-Shirt (Large)"]
        mug, tee = lines
        assert mug.quantity == 2
        assert mug.total_price_cents == 2400
        assert mug.product_image_url == "https://cdn/mug.jpg"
        assert tee.product_sku == "TEE-L"
        assert tee.unit_price_cents == 2200
        assert tee.product_image_url is None

    @pytest.mark.asyncio
    async def test_cleared_cart_has_no_lines(self, storefront, session_factory) -> None:
        async with session_factory() as session, session.begin():
            await session.execute(delete(cart_items).where(cart_items.c.session_id == "sess-1"))
        assert await storefront.get_cart_lines(CartIdentity.for_session("sess-1")) == []


class TestCustomerLookups:
    @pytest.mark.asyncio
    async def test_user_customer(self, storefront) -> None:
        customer = await storefront.get_customer(CartIdentity.for_user("u-1"))
        assert customer.email == "ada@example.com"
        assert customer.name == "Ada Lovelace"

    @pytest.mark.asyncio
    async def test_guest_and_unknown_have_no_customer(self, storefront) -> None:
        assert await storefront.get_customer(CartIdentity.for_session("sess-1")) is None
        assert await storefront.get_customer(CartIdentity.for_user("ghost")) is None

    @pytest.mark.asyncio
    async def test_has_purchased_ignores_cancelled_orders(self, storefront, session_factory) -> None:
        identity = CartIdentity.for_user("u-1")
        async with session_factory() as session, session.begin():
            await session.execute(
                insert(orders).values(id="o1", user_id="u-1", customer_email="ada@example.com", status="cancelled")
            )
        assert await storefront.has_purchased(identity, "ada@example.com") is False

        async with session_factory() as session, session.begin():
            await session.execute(
                insert(orders).values(id="o2", customer_email="ada@example.com", status="paid")
            )
        assert await storefront.has_purchased(identity, "ada@example.com") is True
        assert await storefront.has_purchased(CartIdentity.for_session("s"), None) is False
