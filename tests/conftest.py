"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cart_recovery.api.v1.health import database_available, redis_available
from cart_recovery.config import Settings, get_settings
from cart_recovery.domain import CartIdentity, utcnow
from cart_recovery.infrastructure.database.connection import (
    create_engine_from_settings,
    get_session_factory,
    make_session_factory,
)
from cart_recovery.infrastructure.database.models import AbandonedCart, Base
from cart_recovery.infrastructure.database.storefront import storefront_metadata
from cart_recovery.main import create_app
from cart_recovery.services.campaign import RecoveryCampaignScheduler
from cart_recovery.services.cart_store import CartLine, CustomerInfo, InactiveCart
from cart_recovery.services.detector import CartDetector
from cart_recovery.services.email_delivery import EmailDeliveryError, RecoveryEmail
from cart_recovery.services.promotions import PromotionCode
from cart_recovery.services.repository import AbandonedCartRepository
from cart_recovery.services.sweeper import RetentionSweeper
from shared.constants import PREFERENCE_ABANDONED_CART


# =============================================================================
# In-memory collaborators
# =============================================================================


class FakeCartStore:
    """Storefront carts held in memory; tests mutate them freely."""

    def __init__(self) -> None:
        self.carts: dict[CartIdentity, dict[str, Any]] = {}
        self.customers: dict[CartIdentity, CustomerInfo] = {}
        self.purchasers: set[str] = set()
        self.fail_lines_for: set[CartIdentity] = set()

    def put(
        self,
        identity: CartIdentity,
        lines: list[CartLine],
        last_modified_at: datetime,
        email: str | None = None,
        name: str | None = None,
    ) -> None:
        self.carts[identity] = {"lines": list(lines), "last_modified_at": last_modified_at}
        # Unlike SqlCartStore, contact details may be attached to guest sessions
        if email:
            self.customers[identity] = CustomerInfo(email=email, name=name)

    async def find_inactive_carts(
        self, idle_since: datetime, modified_after: datetime | None = None
    ) -> list[InactiveCart]:
        found = []
        for identity, cart in self.carts.items():
            lines = [line for line in cart["lines"] if line.quantity > 0]
            last_modified = cart["last_modified_at"]
            if not lines or last_modified >= idle_since:
                continue
            if modified_after is not None and last_modified < modified_after:
                continue
            found.append(
                InactiveCart(
                    identity=identity,
                    last_modified_at=last_modified,
                    item_count=len(lines),
                    cart_value_cents=sum(line.total_price_cents for line in lines),
                )
            )
        return found

    async def get_cart_lines(self, identity: CartIdentity) -> list[CartLine]:
        if identity in self.fail_lines_for:
            raise RuntimeError("cart store unavailable")
        return list(self.carts.get(identity, {}).get("lines", []))

    async def get_customer(self, identity: CartIdentity) -> CustomerInfo | None:
        return self.customers.get(identity)

    async def has_purchased(self, identity: CartIdentity, email: str | None) -> bool:
        return email in self.purchasers or identity.reference in self.purchasers


class RecordingEmailSender:
    """Captures messages instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[RecoveryEmail] = []
        self.fail_for: set[str] = set()
        self.before_send: dict[str, Callable[[], Awaitable[None]]] = {}

    async def send_email(self, message: RecoveryEmail) -> dict[str, Any]:
        hook = self.before_send.get(message.to_email)
        if hook is not None:
            await hook()
        if message.to_email in self.fail_for:
            raise EmailDeliveryError("mailbox unavailable")
        self.sent.append(message)
        return {"success": True, "message_id": message.tracking_token, "status": "sent"}

    async def aclose(self) -> None:
        return None

    def sent_to(self, email: str) -> list[RecoveryEmail]:
        return [m for m in self.sent if m.to_email == email]


class FakePromotionService:
    """Opt-ins by email address; codes are numbered sequentially."""

    def __init__(self) -> None:
        self.promotional: set[str] = set()
        self.issued: list[PromotionCode] = []
        self.fail_issue = False

    async def is_opted_in(
        self, identity: CartIdentity, email: str | None, category: str
    ) -> bool:
        if category == PREFERENCE_ABANDONED_CART:
            return True
        return email in self.promotional

    async def issue_code(self, cart: AbandonedCart) -> PromotionCode:
        if self.fail_issue:
            raise RuntimeError("promotion backend unavailable")
        code = PromotionCode(
            code=f"CART5-{len(self.issued) + 1:08d}",
            expires_at=utcnow() + timedelta(days=10),
        )
        self.issued.append(code)
        return code


def cart_line(
    product_id: str, name: str, unit_price_cents: int, quantity: int = 1
) -> CartLine:
    return CartLine(
        product_id=product_id,
        product_name=name,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        product_sku=f"SKU-{product_id}",
        product_image_url=f"https://cdn.example.com/{product_id}.jpg",
    )


# =============================================================================
# Settings and database
# =============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Get test settings with overrides."""
    return Settings(
        app_env="test",
        debug=False,
        database_dsn=f"sqlite+aiosqlite:///{tmp_path / 'cart_recovery.db'}",
        redis_host="localhost",
        redis_port=6379,
        background_jobs_enabled=False,
        email_service="mock",
        mock_email_storage_path=str(tmp_path / "emails"),
        storefront_cart_url="https://shop.example.com/cart",
        tracking_base_url="https://api.example.com/api/v1/tracking",
        job_max_concurrency=4,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database holding both the engine and storefront tables."""
    engine = create_engine_from_settings(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(storefront_metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> AbandonedCartRepository:
    return AbandonedCartRepository(session_factory)


# =============================================================================
# Engine components
# =============================================================================


@pytest.fixture
def cart_store() -> FakeCartStore:
    return FakeCartStore()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def promotions() -> FakePromotionService:
    return FakePromotionService()


@pytest.fixture
def detector(
    repository: AbandonedCartRepository,
    cart_store: FakeCartStore,
    test_settings: Settings,
) -> CartDetector:
    return CartDetector(
        repository,
        cart_store,
        threshold=test_settings.abandonment_threshold,
        lookback=test_settings.detection_lookback,
        max_concurrency=test_settings.job_max_concurrency,
    )


@pytest.fixture
def campaign(
    repository: AbandonedCartRepository,
    email_sender: RecordingEmailSender,
    cart_store: FakeCartStore,
    promotions: FakePromotionService,
    test_settings: Settings,
) -> RecoveryCampaignScheduler:
    return RecoveryCampaignScheduler(
        repository,
        email_sender,
        test_settings.tier_windows(),
        cart_store=cart_store,
        promotions=promotions,
        tracking_base_url=test_settings.tracking_base_url,
        max_concurrency=test_settings.job_max_concurrency,
    )


@pytest.fixture
def sweeper(repository: AbandonedCartRepository, test_settings: Settings) -> RetentionSweeper:
    return RetentionSweeper(
        repository,
        expire_after=test_settings.expire_after,
        delete_after=test_settings.delete_after,
    )


@pytest.fixture
def guest() -> CartIdentity:
    return CartIdentity.for_session("sess-guest-1")


@pytest.fixture
def t0() -> datetime:
    """The moment the sample cart was last modified."""
    return datetime(2026, 3, 2, 10, 0, 0)


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def app(test_settings: Settings) -> Any:
    """Create test application without database access."""

    def get_test_settings() -> Settings:
        return test_settings

    async def database_up() -> bool:
        return True

    async def redis_down() -> bool:
        return False

    app = create_app(test_settings)
    app.dependency_overrides[get_settings] = get_test_settings
    app.dependency_overrides[database_available] = database_up
    app.dependency_overrides[redis_available] = redis_down
    return app


@pytest.fixture
def client(app: Any) -> TestClient:
    """Create synchronous test client."""
    return TestClient(app)


@pytest_asyncio.fixture
async def api_client(
    app: Any, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncClient, None]:
    """Asynchronous client whose endpoints use the test database."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_line() -> Callable[..., CartLine]:
    return cart_line


@pytest.fixture
def seed_cart(repository: AbandonedCartRepository) -> Callable[..., Awaitable[AbandonedCart]]:
    """Record an abandoned cart holding a mug and a pair of socks."""

    async def seed(
        identity: CartIdentity,
        abandoned_at: datetime,
        email: str | None = "ada@example.com",
        name: str | None = "Ada",
        lines: list[CartLine] | None = None,
    ) -> AbandonedCart:
        lines = lines or [cart_line("p1", "Mug", 1200), cart_line("p2", "Socks", 850)]
        cart = await repository.create_if_absent(
            identity,
            abandoned_at=abandoned_at,
            cart_value_cents=sum(line.total_price_cents for line in lines),
            item_count=len(lines),
            customer_email=email,
            customer_name=name,
        )
        await repository.add_snapshots(cart.id, lines)
        return cart

    return seed
