"""Core mapping of the storefront tables this engine reads.

The storefront owns these tables and their migrations; they are declared on
a separate ``MetaData`` so Alembic autogenerate never touches them. Only the
columns the engine uses are mapped.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

storefront_metadata = MetaData()

cart_items = Table(
    "cart_items",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("session_id", String(255)),  # guests
    Column("user_id", String(255)),  # signed-in customers
    Column("product_id", String(64), nullable=False),
    Column("product_variant_id", String(64)),
    Column("quantity", Integer, nullable=False, default=1),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)

products = Table(
    "products",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(500), nullable=False),
    Column("sku", String(255)),
    Column("price_cents", Integer, nullable=False, default=0),
)

product_variants = Table(
    "product_variants",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("product_id", String(64), nullable=False),
    Column("name", String(255)),
    Column("sku", String(255)),
    Column("price_cents", Integer),
)

product_images = Table(
    "product_images",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("product_id", String(64), nullable=False),
    Column("image_url", Text, nullable=False),
    Column("is_primary", Boolean, default=False),
)

users = Table(
    "users",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(320)),
    Column("full_name", String(255)),
)

orders = Table(
    "orders",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64)),
    Column("customer_email", String(320)),
    Column("status", String(50)),
)

email_preferences = Table(
    "email_preferences",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", String(64)),
    Column("email", String(320), nullable=False),
    Column("transactional", Boolean, default=True),
    Column("abandoned_cart", Boolean, default=True),
    Column("promotional", Boolean, default=False),
    Column("newsletter", Boolean, default=False),
    Column("product_updates", Boolean, default=False),
)

promotion_codes = Table(
    "promotion_codes",
    storefront_metadata,
    Column("id", String(64), primary_key=True),
    Column("code", String(64), nullable=False, unique=True),
    Column("email", String(320)),
    Column("user_id", String(64)),
    Column("discount_percent", Integer, nullable=False),
    Column("max_uses", Integer, default=1),
    Column("expires_at", DateTime),
    Column("created_at", DateTime),
)

# Orders in these states do not count as a purchase
NON_PURCHASE_ORDER_STATUSES = ("cancelled", "failed")
