"""Shared FastAPI dependencies."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cart_recovery.infrastructure.database.connection import get_session_factory
from cart_recovery.services.analytics import RecoveryAnalyticsService
from cart_recovery.services.repository import AbandonedCartRepository


def get_repository(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AbandonedCartRepository:
    return AbandonedCartRepository(session_factory)


def get_analytics(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> RecoveryAnalyticsService:
    return RecoveryAnalyticsService(session_factory)
