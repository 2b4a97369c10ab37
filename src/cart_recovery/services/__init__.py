"""Detection, campaign and retention services."""

from cart_recovery.services.analytics import RecoveryAnalyticsService
from cart_recovery.services.campaign import RecoveryCampaignScheduler
from cart_recovery.services.cart_store import SqlCartStore
from cart_recovery.services.detector import CartDetector
from cart_recovery.services.promotions import StorefrontPromotionService
from cart_recovery.services.repository import AbandonedCartRepository
from cart_recovery.services.sweeper import RetentionSweeper

__all__ = [
    "AbandonedCartRepository",
    "CartDetector",
    "RecoveryAnalyticsService",
    "RecoveryCampaignScheduler",
    "RetentionSweeper",
    "SqlCartStore",
    "StorefrontPromotionService",
]
