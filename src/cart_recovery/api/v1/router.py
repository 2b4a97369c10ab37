"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from cart_recovery.api.v1 import (
    abandoned_carts,
    health,
    recoveries,
    tracking,
)

api_router = APIRouter()

# Include all routers
api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    tracking.router,
    prefix="/tracking",
    tags=["Tracking"],
)

api_router.include_router(
    recoveries.router,
    prefix="/recoveries",
    tags=["Recoveries"],
)

api_router.include_router(
    abandoned_carts.router,
    prefix="/abandoned-carts",
    tags=["Abandoned Carts"],
)
