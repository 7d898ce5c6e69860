"""
Data models and schemas for the merchant app
"""

from .schemas import (
    ErrorResponse,
    AgencyCreate,
    AgencyUpdate,
    AgencyOut,
    MerchantReferralOut,
    PartnerPayoutOut,
    LinkMerchantRequest,
    MarkPaidRequest,
    WidgetSettingsRequest,
    AnalyticsEventRequest,
    UpgradePlanRequest,
    PlanOut
)

__all__ = [
    "ErrorResponse",
    "AgencyCreate",
    "AgencyUpdate",
    "AgencyOut",
    "MerchantReferralOut",
    "PartnerPayoutOut",
    "LinkMerchantRequest",
    "MarkPaidRequest",
    "WidgetSettingsRequest",
    "AnalyticsEventRequest",
    "UpgradePlanRequest",
    "PlanOut"
]
