"""Read-only access to the storefront's live shopping carts.

The storefront owns ``cart_items`` and may change or clear a cart at any
moment; nothing in this module writes to it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cart_recovery.domain import CartIdentity, InvalidIdentityError
from cart_recovery.infrastructure.database.storefront import (
    NON_PURCHASE_ORDER_STATUSES,
    cart_items,
    orders,
    product_images,
    product_variants,
    products,
    users,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class InactiveCart:
    """One identity's cart aggregated over its line items."""

    identity: CartIdentity
    last_modified_at: datetime
    item_count: int
    cart_value_cents: int


@dataclass(frozen=True)
class CartLine:
    """A live cart line with its current product details."""

    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int
    product_sku: str | None = None
    product_image_url: str | None = None

    @property
    def total_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class CustomerInfo:
    email: str | None
    name: str | None


class CartStore(Protocol):
    """What the engine needs from the storefront's cart data."""

    async def find_inactive_carts(
        self, idle_since: datetime, modified_after: datetime | None = None
    ) -> list[InactiveCart]:
        """Carts whose newest line was modified before ``idle_since``."""
        ...

    async def get_cart_lines(self, identity: CartIdentity) -> list[CartLine]: ...

    async def get_customer(self, identity: CartIdentity) -> CustomerInfo | None: ...

    async def has_purchased(self, identity: CartIdentity, email: str | None) -> bool: ...


def _identity_filter(identity: CartIdentity):
    if identity.is_guest:
        return cart_items.c.session_id == identity.session_id
    return cart_items.c.user_id == identity.user_id


class SqlCartStore:
    """CartStore backed by the storefront tables in the shared database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_inactive_carts(
        self, idle_since: datetime, modified_after: datetime | None = None
    ) -> list[InactiveCart]:
        unit_price = func.coalesce(product_variants.c.price_cents, products.c.price_cents)
        last_modified = func.max(cart_items.c.updated_at)

        having = last_modified < idle_since
        if modified_after is not None:
            having = and_(having, last_modified >= modified_after)

        query = (
            select(
                cart_items.c.session_id,
                cart_items.c.user_id,
                last_modified.label("last_modified_at"),
                func.count(func.distinct(cart_items.c.id)).label("item_count"),
                func.sum(unit_price * cart_items.c.quantity).label("cart_value_cents"),
            )
            .select_from(
                cart_items.join(products, cart_items.c.product_id == products.c.id).outerjoin(
                    product_variants,
                    cart_items.c.product_variant_id == product_variants.c.id,
                )
            )
            .where(cart_items.c.quantity > 0)
            .group_by(cart_items.c.session_id, cart_items.c.user_id)
            .having(having)
            .order_by(last_modified)
        )

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()

        carts = []
        for row in rows:
            try:
                identity = CartIdentity(session_id=row.session_id, user_id=row.user_id)
            except InvalidIdentityError:
                logger.warning(
                    "Skipping cart with invalid identity",
                    session_id=row.session_id,
                    user_id=row.user_id,
                )
                continue
            carts.append(
                InactiveCart(
                    identity=identity,
                    last_modified_at=row.last_modified_at,
                    item_count=int(row.item_count or 0),
                    cart_value_cents=int(row.cart_value_cents or 0),
                )
            )
        return carts

    async def get_cart_lines(self, identity: CartIdentity) -> list[CartLine]:
        primary_image = (
            select(product_images.c.image_url)
            .where(product_images.c.product_id == products.c.id)
            .order_by(product_images.c.is_primary.desc(), product_images.c.id)
            .limit(1)
            .correlate(products)
            .scalar_subquery()
        )
        query = (
            select(
                cart_items.c.product_id,
                products.c.name.label("product_name"),
                product_variants.c.name.label("variant_name"),
                func.coalesce(product_variants.c.sku, products.c.sku).label("sku"),
                func.coalesce(product_variants.c.price_cents, products.c.price_cents).label(
                    "unit_price_cents"
                ),
                cart_items.c.quantity,
                primary_image.label("image_url"),
            )
            .select_from(
                cart_items.join(products, cart_items.c.product_id == products.c.id).outerjoin(
                    product_variants,
                    cart_items.c.product_variant_id == product_variants.c.id,
                )
            )
            .where(_identity_filter(identity), cart_items.c.quantity > 0)
            .order_by(cart_items.c.created_at, cart_items.c.id)
        )

        async with self.session_factory() as session:
            rows = (await session.execute(query)).all()

        lines = []
        for row in rows:
            name = row.product_name
            if row.variant_name:
                name = f"{row.product_name} ({row.variant_name})"
            lines.append(
                CartLine(
                    product_id=row.product_id,
                    product_name=name,
                    quantity=row.quantity,
                    unit_price_cents=int(row.unit_price_cents or 0),
                    product_sku=row.sku,
                    product_image_url=row.image_url,
                )
            )
        return lines

    async def get_customer(self, identity: CartIdentity) -> CustomerInfo | None:
        # Guest sessions carry no contact details in the storefront
        if identity.is_guest:
            return None

        query = select(users.c.email, users.c.full_name).where(users.c.id == identity.user_id)
        async with self.session_factory() as session:
            row = (await session.execute(query)).first()

        if row is None:
            return None
        return CustomerInfo(email=row.email, name=row.full_name)

    async def has_purchased(self, identity: CartIdentity, email: str | None) -> bool:
        matches = []
        if identity.user_id:
            matches.append(orders.c.user_id == identity.user_id)
        if email:
            matches.append(orders.c.customer_email == email)
        if not matches:
            return False

        query = select(
            exists().where(
                or_(*matches),
                orders.c.status.not_in(NON_PURCHASE_ORDER_STATUSES),
            )
        )
        async with self.session_factory() as session:
            return bool((await session.execute(query)).scalar())
