"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cart_recovery import __version__
from cart_recovery.api.v1.router import api_router
from cart_recovery.config import Settings, get_settings
from cart_recovery.infrastructure.database.connection import (
    dispose_engine,
    get_session_factory,
)
from cart_recovery.infrastructure.redis import TickLock, close_redis, get_redis_client
from cart_recovery.jobs import build_runtime
from cart_recovery.log_config import configure_logging

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the in-process recovery jobs and release resources on shutdown."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Cart Recovery Service",
        app_env=settings.app_env,
        debug=settings.debug,
        scheduler_backend=settings.scheduler_backend,
    )

    runtime = None
    if settings.background_jobs_enabled and settings.scheduler_backend == "inprocess":
        redis_client = await get_redis_client()
        runtime = build_runtime(
            settings,
            get_session_factory(),
            lock=TickLock(redis_client) if redis_client else None,
        )
        runtime.start_jobs()

    yield

    if runtime is not None:
        await runtime.stop_jobs()
        await runtime.email_sender.aclose()
    await close_redis()
    await dispose_engine()
    logger.info("Shutting down Cart Recovery Service")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Cart Recovery API",
        description="Abandoned cart detection, recovery email campaigns and tracking callbacks",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


def run() -> None:
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "cart_recovery.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
