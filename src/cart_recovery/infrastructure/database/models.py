"""SQLAlchemy models for the abandoned-cart recovery engine.

These tables are owned exclusively by the engine. The storefront's own
tables (live carts, users, orders) are mapped read-only in ``storefront``.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cart_recovery.domain import (
    AttemptStatus,
    CartIdentity,
    CartStatus,
    RecoveryMethod,
    RecoveryTier,
)


class Base(DeclarativeBase):
    """Base class for all models."""


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum *values* as plain strings so raw predicates can match them."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# Partial unique indexes: at most one open abandonment per identity
OPEN_STATUS_PREDICATE = "status IN ('active', 'contacted')"


# =============================================================================
# Abandoned Carts
# =============================================================================


class AbandonedCart(Base):
    """A cart judged abandoned, anchored at its last storefront modification."""

    __tablename__ = "abandoned_carts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity: exactly one of the two is set
    session_id: Mapped[Optional[str]] = mapped_column(String(255))
    user_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Best-effort enrichment at detection time
    customer_email: Mapped[Optional[str]] = mapped_column(String(320))
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))

    cart_value_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Anchor for every tier window; never updated
    abandoned_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[CartStatus] = mapped_column(
        _enum(CartStatus), default=CartStatus.ACTIVE, nullable=False
    )
    recovered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    recovery_method: Mapped[Optional[RecoveryMethod]] = mapped_column(_enum(RecoveryMethod))
    last_contacted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Promotion code minted for the later tiers
    promotion_code: Mapped[Optional[str]] = mapped_column(String(64))
    promotion_code_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    snapshots: Mapped[list["CartSnapshot"]] = relationship(
        back_populates="abandoned_cart",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CartSnapshot.id",
    )
    attempts: Mapped[list["RecoveryAttempt"]] = relationship(
        back_populates="abandoned_cart",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RecoveryAttempt.sent_at",
    )

    __table_args__ = (
        CheckConstraint(
            "(session_id IS NULL) <> (user_id IS NULL)",
            name="ck_abandoned_carts_single_identity",
        ),
        Index(
            "uq_abandoned_carts_open_session",
            "session_id",
            unique=True,
            postgresql_where=text(f"{OPEN_STATUS_PREDICATE} AND session_id IS NOT NULL"),
            sqlite_where=text(f"{OPEN_STATUS_PREDICATE} AND session_id IS NOT NULL"),
        ),
        Index(
            "uq_abandoned_carts_open_user",
            "user_id",
            unique=True,
            postgresql_where=text(f"{OPEN_STATUS_PREDICATE} AND user_id IS NOT NULL"),
            sqlite_where=text(f"{OPEN_STATUS_PREDICATE} AND user_id IS NOT NULL"),
        ),
        Index("ix_abandoned_carts_session_id", "session_id"),
        Index("ix_abandoned_carts_user_id", "user_id"),
        Index("ix_abandoned_carts_status_abandoned_at", "status", "abandoned_at"),
        Index("ix_abandoned_carts_customer_email", "customer_email"),
    )

    @property
    def identity(self) -> CartIdentity:
        return CartIdentity(session_id=self.session_id, user_id=self.user_id)

    @property
    def is_open(self) -> bool:
        return self.status.is_open


# =============================================================================
# Cart Snapshots
# =============================================================================


class CartSnapshot(Base):
    """Frozen copy of one cart line, captured when the cart was detected.

    Product name and SKU are denormalized; the live product may change later.
    """

    __tablename__ = "cart_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    abandoned_cart_id: Mapped[int] = mapped_column(
        ForeignKey("abandoned_carts.id", ondelete="CASCADE"), nullable=False
    )

    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    product_sku: Mapped[Optional[str]] = mapped_column(String(255))
    product_image_url: Mapped[Optional[str]] = mapped_column(Text)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    abandoned_cart: Mapped[AbandonedCart] = relationship(back_populates="snapshots")

    __table_args__ = (
        Index("ix_cart_snapshots_abandoned_cart_id", "abandoned_cart_id"),
        Index("ix_cart_snapshots_product_id", "product_id"),
    )


# =============================================================================
# Recovery Attempts
# =============================================================================


class RecoveryAttempt(Base):
    """One recovery email per (abandoned cart, tier), sent or not."""

    __tablename__ = "cart_recovery_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    abandoned_cart_id: Mapped[int] = mapped_column(
        ForeignKey("abandoned_carts.id", ondelete="CASCADE"), nullable=False
    )

    tier: Mapped[RecoveryTier] = mapped_column(_enum(RecoveryTier), nullable=False)
    status: Mapped[AttemptStatus] = mapped_column(
        _enum(AttemptStatus), default=AttemptStatus.PENDING, nullable=False
    )
    email_subject: Mapped[Optional[str]] = mapped_column(String(255))
    tracking_token: Mapped[str] = mapped_column(String(64), nullable=False)

    sent_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    abandoned_cart: Mapped[AbandonedCart] = relationship(back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("abandoned_cart_id", "tier", name="uq_cart_recovery_attempts_cart_tier"),
        UniqueConstraint("tracking_token", name="uq_cart_recovery_attempts_tracking_token"),
        Index("ix_cart_recovery_attempts_tier_sent_at", "tier", "sent_at"),
    )
