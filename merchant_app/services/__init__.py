"""
Business logic services for the merchant app
"""

from .agencies import AgencyService
from .commission import CommissionService
from .payouts import PayoutService
from .referrals import ReferralService
from .shops import ShopService
from .subscriptions import SubscriptionService
from .upstream import UpstreamClient
from .usage import UsageService
from .widget import AnalyticsService, WidgetService

__all__ = [
    "AgencyService",
    "CommissionService",
    "PayoutService",
    "ReferralService",
    "ShopService",
    "SubscriptionService",
    "UpstreamClient",
    "UsageService",
    "AnalyticsService",
    "WidgetService"
]
