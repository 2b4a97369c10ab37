"""Persistence of abandoned carts, their snapshots and recovery attempts.

Every public method runs in its own short transaction. Writes that race with
other workers are expressed as conditional statements (INSERT ... ON CONFLICT
DO NOTHING, UPDATE ... WHERE status IN ...) so the database decides the
winner.
"""

from collections.abc import Sequence
from datetime import datetime

import structlog
from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from cart_recovery.domain import (
    OPEN_STATUSES,
    AttemptStatus,
    CartIdentity,
    CartStatus,
    RecoveryMethod,
    TierWindow,
    utcnow,
)
from cart_recovery.infrastructure.database.models import (
    AbandonedCart,
    CartSnapshot,
    RecoveryAttempt,
)
from cart_recovery.services.cart_store import CartLine

logger = structlog.get_logger()

# Attempts whose email actually left the building
DELIVERED_STATUSES = (AttemptStatus.SENT, AttemptStatus.OPENED, AttemptStatus.CLICKED)


def _insert_for(session: AsyncSession, model):
    """Dialect-specific INSERT so ON CONFLICT DO NOTHING is available."""
    if session.bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def _identity_clause(identity: CartIdentity):
    if identity.is_guest:
        return AbandonedCart.session_id == identity.session_id
    return AbandonedCart.user_id == identity.user_id


class AbandonedCartRepository:
    """Read/write access to the engine-owned tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Abandoned carts
    # -------------------------------------------------------------------------

    async def get_cart(self, cart_id: int) -> AbandonedCart | None:
        async with self.session_factory() as session:
            return await session.get(AbandonedCart, cart_id)

    async def get_cart_detail(self, cart_id: int) -> AbandonedCart | None:
        """Load a cart together with its snapshots and attempts."""
        query = (
            select(AbandonedCart)
            .where(AbandonedCart.id == cart_id)
            .options(
                selectinload(AbandonedCart.snapshots),
                selectinload(AbandonedCart.attempts),
            )
        )
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def get_open_cart(self, identity: CartIdentity) -> AbandonedCart | None:
        query = select(AbandonedCart).where(
            _identity_clause(identity), AbandonedCart.status.in_(OPEN_STATUSES)
        )
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def get_latest_for_identity(self, identity: CartIdentity) -> AbandonedCart | None:
        """Most recent abandonment record of ``identity`` in any status."""
        query = (
            select(AbandonedCart)
            .where(_identity_clause(identity))
            .order_by(AbandonedCart.abandoned_at.desc(), AbandonedCart.id.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def list_carts(
        self,
        status: CartStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AbandonedCart], int]:
        query = select(AbandonedCart)
        count_query = select(func.count()).select_from(AbandonedCart)
        if status is not None:
            query = query.where(AbandonedCart.status == status)
            count_query = count_query.where(AbandonedCart.status == status)

        query = (
            query.order_by(AbandonedCart.abandoned_at.desc(), AbandonedCart.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            carts = list((await session.execute(query)).scalars().all())
            total = (await session.execute(count_query)).scalar_one()
        return carts, total

    async def create_if_absent(
        self,
        identity: CartIdentity,
        abandoned_at: datetime,
        cart_value_cents: int,
        item_count: int,
        customer_email: str | None = None,
        customer_name: str | None = None,
    ) -> AbandonedCart | None:
        """
        Insert an active abandonment for ``identity`` unless one is already open.

        The partial unique indexes on open records make this atomic; a ``None``
        return means another record (possibly created concurrently) is open.
        """
        async with self.session_factory() as session, session.begin():
            stmt = (
                _insert_for(session, AbandonedCart)
                .values(
                    session_id=identity.session_id,
                    user_id=identity.user_id,
                    customer_email=customer_email,
                    customer_name=customer_name,
                    cart_value_cents=cart_value_cents,
                    item_count=item_count,
                    abandoned_at=abandoned_at,
                    status=CartStatus.ACTIVE,
                )
                .on_conflict_do_nothing()
                .returning(AbandonedCart.id)
            )
            cart_id = (await session.execute(stmt)).scalar_one_or_none()
            if cart_id is None:
                return None
            return await session.get(AbandonedCart, cart_id)

    async def add_snapshots(self, cart_id: int, lines: Sequence[CartLine]) -> int:
        """Freeze the given cart lines under ``cart_id``."""
        if not lines:
            return 0
        async with self.session_factory() as session, session.begin():
            session.add_all(
                CartSnapshot(
                    abandoned_cart_id=cart_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    product_sku=line.product_sku,
                    product_image_url=line.product_image_url,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_price_cents=line.total_price_cents,
                )
                for line in lines
            )
        return len(lines)

    async def get_snapshots(self, cart_id: int) -> list[CartSnapshot]:
        query = (
            select(CartSnapshot)
            .where(CartSnapshot.abandoned_cart_id == cart_id)
            .order_by(CartSnapshot.id)
        )
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def find_carts_needing_email(
        self, window: TierWindow, now: datetime
    ) -> list[AbandonedCart]:
        """Open carts with an email, inside ``window`` and not yet attempted for its tier."""
        oldest, newest = window.abandoned_at_bounds(now)
        already_attempted = exists().where(
            RecoveryAttempt.abandoned_cart_id == AbandonedCart.id,
            RecoveryAttempt.tier == window.tier,
        )
        query = (
            select(AbandonedCart)
            .where(
                AbandonedCart.status.in_(OPEN_STATUSES),
                AbandonedCart.customer_email.is_not(None),
                AbandonedCart.customer_email != "",
                AbandonedCart.abandoned_at > oldest,
                AbandonedCart.abandoned_at <= newest,
                ~already_attempted,
            )
            .options(selectinload(AbandonedCart.snapshots))
            .order_by(AbandonedCart.abandoned_at, AbandonedCart.id)
        )
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def mark_contacted(self, cart_id: int, now: datetime | None = None) -> bool:
        now = now or utcnow()
        stmt = (
            update(AbandonedCart)
            .where(AbandonedCart.id == cart_id, AbandonedCart.status.in_(OPEN_STATUSES))
            .values(status=CartStatus.CONTACTED, last_contacted_at=now)
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def attach_promotion_code(
        self, cart_id: int, code: str, expires_at: datetime | None
    ) -> None:
        stmt = (
            update(AbandonedCart)
            .where(AbandonedCart.id == cart_id)
            .values(promotion_code=code, promotion_code_expires_at=expires_at)
        )
        async with self.session_factory() as session, session.begin():
            await session.execute(stmt)

    async def update_notes(self, cart_id: int, notes: str | None) -> AbandonedCart | None:
        stmt = update(AbandonedCart).where(AbandonedCart.id == cart_id).values(notes=notes)
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
            if result.rowcount == 0:
                return None
            return await session.get(AbandonedCart, cart_id)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def _latest_delivered_tier(self, session: AsyncSession, cart_id: int):
        query = (
            select(RecoveryAttempt.tier)
            .where(
                RecoveryAttempt.abandoned_cart_id == cart_id,
                RecoveryAttempt.status.in_(DELIVERED_STATUSES),
            )
            .order_by(RecoveryAttempt.sent_at.desc(), RecoveryAttempt.id.desc())
            .limit(1)
        )
        return (await session.execute(query)).scalar_one_or_none()

    async def _recover(
        self,
        session: AsyncSession,
        cart: AbandonedCart,
        method: RecoveryMethod | None,
        now: datetime,
    ) -> bool:
        if method is None:
            tier = await self._latest_delivered_tier(session, cart.id)
            method = RecoveryMethod.from_tier(tier) if tier else RecoveryMethod.ORGANIC

        result = await session.execute(
            update(AbandonedCart)
            .where(AbandonedCart.id == cart.id, AbandonedCart.status.in_(OPEN_STATUSES))
            .values(status=CartStatus.RECOVERED, recovered_at=now, recovery_method=method)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await session.refresh(cart)
        return True

    async def mark_recovered(
        self,
        identity: CartIdentity,
        method: RecoveryMethod | None = None,
        now: datetime | None = None,
    ) -> AbandonedCart | None:
        """
        Close the open abandonment of ``identity`` as recovered.

        Without an explicit ``method`` the tier of the latest delivered email is
        credited, or ``organic`` when no email went out. Returns the recovered
        cart, or ``None`` when the identity had nothing open.
        """
        now = now or utcnow()
        async with self.session_factory() as session, session.begin():
            query = select(AbandonedCart).where(
                _identity_clause(identity), AbandonedCart.status.in_(OPEN_STATUSES)
            )
            cart = (await session.execute(query)).scalar_one_or_none()
            if cart is None:
                return None
            if not await self._recover(session, cart, method, now):
                return None

        logger.info(
            "Abandoned cart recovered",
            cart_id=cart.id,
            method=cart.recovery_method.value,
            **identity.log_context(),
        )
        return cart

    async def mark_recovered_by_id(
        self,
        cart_id: int,
        method: RecoveryMethod | None = RecoveryMethod.MANUAL,
        now: datetime | None = None,
    ) -> AbandonedCart | None:
        """Recover a cart by id; terminal carts are returned unchanged."""
        now = now or utcnow()
        async with self.session_factory() as session, session.begin():
            cart = await session.get(AbandonedCart, cart_id)
            if cart is None:
                return None
            if cart.is_open and await self._recover(session, cart, method, now):
                logger.info(
                    "Abandoned cart recovered",
                    cart_id=cart.id,
                    method=cart.recovery_method.value,
                )
        return cart

    # -------------------------------------------------------------------------
    # Recovery attempts
    # -------------------------------------------------------------------------

    async def claim_attempt(
        self,
        cart_id: int,
        tier,
        tracking_token: str,
        subject: str,
        now: datetime | None = None,
    ) -> int | None:
        """
        Reserve the (cart, tier) slot before sending.

        Returns the new attempt id, or ``None`` when the tier was already
        attempted; only the caller holding an id may send the email.
        """
        now = now or utcnow()
        async with self.session_factory() as session, session.begin():
            stmt = (
                _insert_for(session, RecoveryAttempt)
                .values(
                    abandoned_cart_id=cart_id,
                    tier=tier,
                    status=AttemptStatus.PENDING,
                    email_subject=subject,
                    tracking_token=tracking_token,
                    sent_at=now,
                )
                .on_conflict_do_nothing()
                .returning(RecoveryAttempt.id)
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def complete_attempt(
        self,
        attempt_id: int,
        status: AttemptStatus,
        error_message: str | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        """Settle a pending attempt as ``sent`` or ``failed``."""
        values = {"status": status, "error_message": error_message}
        if sent_at is not None:
            values["sent_at"] = sent_at
        stmt = (
            update(RecoveryAttempt)
            .where(
                RecoveryAttempt.id == attempt_id,
                RecoveryAttempt.status == AttemptStatus.PENDING,
            )
            .values(**values)
        )
        async with self.session_factory() as session, session.begin():
            await session.execute(stmt)

    async def release_attempt(self, attempt_id: int) -> bool:
        """Drop a claim whose send was abandoned so a later tick can retry the tier."""
        stmt = delete(RecoveryAttempt).where(
            RecoveryAttempt.id == attempt_id,
            RecoveryAttempt.status == AttemptStatus.PENDING,
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def fail_stale_pending(self, claimed_before: datetime) -> int:
        """
        Settle claims left ``pending`` by a worker that died mid-send.

        Whether the email went out is unknown, so the tier is closed as
        ``failed`` rather than sent again.
        """
        stmt = (
            update(RecoveryAttempt)
            .where(
                RecoveryAttempt.status == AttemptStatus.PENDING,
                RecoveryAttempt.sent_at < claimed_before,
            )
            .values(
                status=AttemptStatus.FAILED,
                error_message="Send interrupted before its outcome was recorded",
            )
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount

    async def get_attempts(self, cart_id: int) -> list[RecoveryAttempt]:
        query = (
            select(RecoveryAttempt)
            .where(RecoveryAttempt.abandoned_cart_id == cart_id)
            .order_by(RecoveryAttempt.sent_at, RecoveryAttempt.id)
        )
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def get_attempt_by_token(self, tracking_token: str) -> RecoveryAttempt | None:
        query = select(RecoveryAttempt).where(RecoveryAttempt.tracking_token == tracking_token)
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one_or_none()

    async def record_open(self, tracking_token: str, now: datetime | None = None) -> bool:
        """Set ``opened_at`` once; later opens are no-ops. True if this call set it."""
        now = now or utcnow()
        by_token = RecoveryAttempt.tracking_token == tracking_token
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(RecoveryAttempt)
                .where(
                    by_token,
                    RecoveryAttempt.opened_at.is_(None),
                    RecoveryAttempt.status.in_(DELIVERED_STATUSES),
                )
                .values(opened_at=now)
            )
            await session.execute(
                update(RecoveryAttempt)
                .where(by_token, RecoveryAttempt.status == AttemptStatus.SENT)
                .values(status=AttemptStatus.OPENED)
            )
        return result.rowcount > 0

    async def record_click(self, tracking_token: str, now: datetime | None = None) -> bool:
        """Set ``clicked_at`` once; a click also counts as an open."""
        now = now or utcnow()
        by_token = RecoveryAttempt.tracking_token == tracking_token
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(RecoveryAttempt)
                .where(
                    by_token,
                    RecoveryAttempt.clicked_at.is_(None),
                    RecoveryAttempt.status.in_(DELIVERED_STATUSES),
                )
                .values(clicked_at=now)
            )
            await session.execute(
                update(RecoveryAttempt)
                .where(
                    by_token,
                    RecoveryAttempt.opened_at.is_(None),
                    RecoveryAttempt.status.in_(DELIVERED_STATUSES),
                )
                .values(opened_at=now)
            )
            await session.execute(
                update(RecoveryAttempt)
                .where(
                    by_token,
                    RecoveryAttempt.status.in_((AttemptStatus.SENT, AttemptStatus.OPENED)),
                )
                .values(status=AttemptStatus.CLICKED)
            )
        return result.rowcount > 0

    async def record_bounce(self, tracking_token: str, reason: str | None = None) -> bool:
        stmt = (
            update(RecoveryAttempt)
            .where(
                RecoveryAttempt.tracking_token == tracking_token,
                RecoveryAttempt.status.in_((AttemptStatus.SENT, AttemptStatus.OPENED)),
            )
            .values(status=AttemptStatus.BOUNCED, error_message=reason)
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount > 0

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def expire_stale(self, abandoned_before: datetime) -> int:
        """Expire open carts abandoned before the cutoff."""
        stmt = (
            update(AbandonedCart)
            .where(
                AbandonedCart.status.in_(OPEN_STATUSES),
                AbandonedCart.abandoned_at < abandoned_before,
            )
            .values(status=CartStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount

    async def delete_expired(self, abandoned_before: datetime) -> int:
        """Delete expired carts abandoned before the cutoff; children cascade in the database."""
        stmt = (
            delete(AbandonedCart)
            .where(
                AbandonedCart.status == CartStatus.EXPIRED,
                AbandonedCart.abandoned_at < abandoned_before,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount
