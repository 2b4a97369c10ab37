"""Background job lifecycle for the detector, campaign scheduler and sweeper."""

import asyncio
import math
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from cart_recovery.config import Settings, get_settings
from cart_recovery.infrastructure.database.connection import (
    create_engine_from_settings,
    make_session_factory,
)
from cart_recovery.infrastructure.redis import TickLock, connect_redis
from cart_recovery.services.campaign import RecoveryCampaignScheduler
from cart_recovery.services.cart_store import CartStore, SqlCartStore
from cart_recovery.services.detector import CartDetector
from cart_recovery.services.email_delivery import EmailSender, get_email_sender
from cart_recovery.services.promotions import PromotionService, StorefrontPromotionService
from cart_recovery.services.repository import AbandonedCartRepository
from cart_recovery.services.sweeper import RetentionSweeper

logger = structlog.get_logger()


class PeriodicJob:
    """
    Runs ``func`` every ``interval`` seconds until stopped.

    Ticks are scheduled at a fixed rate (start + k * interval); if a tick
    overruns, the slots it covered are skipped rather than run back to back.
    Exceptions raised by a tick are logged and the schedule continues.
    ``stop()`` never interrupts a tick that is already running.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        lock: TickLock | None = None,
        run_immediately: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.func = func
        self.interval = interval
        self.lock = lock
        self.run_immediately = run_immediately
        self.ticks = 0
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.info("Periodic job started", job=self.name, interval_seconds=self.interval)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop scheduling and wait for the in-flight tick, if any, to finish."""
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Periodic job did not stop in time, cancelling", job=self.name)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Periodic job stopped", job=self.name, ticks=self.ticks)

    async def run_tick(self) -> Any:
        """Run one tick now, guarded by the tick lock when one is configured."""
        if self.lock is not None:
            acquired = await self.lock.acquire(self.name, ttl_seconds=max(1, int(self.interval)))
            if not acquired:
                logger.debug("Tick already running elsewhere, skipping", job=self.name)
                return None
        try:
            return await self.func()
        except Exception as e:
            logger.error("Periodic job tick failed", job=self.name, error=str(e), exc_info=True)
            return None
        finally:
            self.ticks += 1
            if self.lock is not None:
                await self.lock.release(self.name)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        slot = 0 if self.run_immediately else 1

        while not self._stopping.is_set():
            delay = started + slot * self.interval - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            await self.run_tick()

            elapsed = loop.time() - started
            slot = max(slot + 1, math.floor(elapsed / self.interval) + 1)


@dataclass
class RecoveryRuntime:
    """The engine's services wired to one database and one email sender."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    repository: AbandonedCartRepository
    detector: CartDetector
    campaign: RecoveryCampaignScheduler
    sweeper: RetentionSweeper
    email_sender: EmailSender
    lock: TickLock | None = None
    jobs: list[PeriodicJob] = field(default_factory=list)

    def build_jobs(self) -> list[PeriodicJob]:
        settings = self.settings
        self.jobs = [
            PeriodicJob(
                "detect_abandoned_carts",
                self.detector.run_once,
                settings.detection_interval_seconds,
                lock=self.lock,
            ),
            PeriodicJob(
                "send_recovery_emails",
                self.campaign.run_once,
                settings.campaign_interval_seconds,
                lock=self.lock,
            ),
            PeriodicJob(
                "sweep_abandoned_carts",
                self.sweeper.run_once,
                settings.retention_interval_seconds,
                lock=self.lock,
            ),
        ]
        return self.jobs

    def start_jobs(self) -> None:
        for job in self.jobs or self.build_jobs():
            job.start()

    async def stop_jobs(self, timeout: float | None = None) -> None:
        await asyncio.gather(*(job.stop(timeout=timeout) for job in self.jobs))


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    email_sender: EmailSender | None = None,
    cart_store: CartStore | None = None,
    promotions: PromotionService | None = None,
    lock: TickLock | None = None,
) -> RecoveryRuntime:
    """Wire the services together; collaborators default to the storefront-backed ones."""
    repository = AbandonedCartRepository(session_factory)
    cart_store = cart_store or SqlCartStore(session_factory)
    promotions = promotions or StorefrontPromotionService(
        session_factory,
        prefix=settings.promo_code_prefix,
        discount_percent=settings.promo_discount_percent,
        valid_days=settings.promo_code_valid_days,
    )
    email_sender = email_sender or get_email_sender(settings)

    return RecoveryRuntime(
        settings=settings,
        session_factory=session_factory,
        repository=repository,
        detector=CartDetector(
            repository,
            cart_store,
            threshold=settings.abandonment_threshold,
            lookback=settings.detection_lookback,
            max_concurrency=settings.job_max_concurrency,
        ),
        campaign=RecoveryCampaignScheduler(
            repository,
            email_sender,
            settings.tier_windows(),
            cart_store=cart_store,
            promotions=promotions,
            tracking_base_url=settings.tracking_base_url,
            max_concurrency=settings.job_max_concurrency,
            pending_grace=settings.pending_attempt_grace,
        ),
        sweeper=RetentionSweeper(
            repository,
            expire_after=settings.expire_after,
            delete_after=settings.delete_after,
        ),
        email_sender=email_sender,
        lock=lock,
    )


@asynccontextmanager
async def recovery_runtime(
    settings: Settings | None = None,
    engine: AsyncEngine | None = None,
    use_tick_lock: bool = True,
) -> AsyncGenerator[RecoveryRuntime, None]:
    """
    Build a runtime with its own resources and release them on exit.

    An ``engine`` passed in is borrowed and left open; otherwise one is
    created from settings and disposed when the context exits.
    """
    settings = settings or get_settings()
    owns_engine = engine is None
    engine = engine or create_engine_from_settings(settings)
    redis_client = await connect_redis(settings.redis_url) if use_tick_lock else None

    runtime = build_runtime(
        settings,
        make_session_factory(engine),
        lock=TickLock(redis_client) if redis_client else None,
    )
    try:
        yield runtime
    finally:
        await runtime.stop_jobs()
        await runtime.email_sender.aclose()
        if redis_client is not None:
            await redis_client.aclose()
        if owns_engine:
            await engine.dispose()
