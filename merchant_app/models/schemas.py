from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Dict, Any
from datetime import date, datetime
from decimal import Decimal

from ..utils.helpers import is_valid_email


class ErrorResponse(BaseModel):
    error: str
    message: str
    status_code: int
    timestamp: datetime = Field(default_factory=datetime.now)


# Partner program
class AgencyCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str
    payment_method: Optional[str] = None
    payment_email: Optional[str] = None
    minimum_payout_threshold: Optional[Decimal] = Field(default=None, ge=0)

    @field_validator("email", "payment_email")
    @classmethod
    def validate_email(cls, v):
        if v is not None and not is_valid_email(v):
            raise ValueError("invalid email address")
        return v


class AgencyUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    payment_method: Optional[str] = None
    payment_email: Optional[str] = None
    bank_account_encrypted: Optional[str] = None
    minimum_payout_threshold: Optional[Decimal] = Field(default=None, ge=0)
    active: Optional[bool] = None
    payment_verified: Optional[bool] = None


class AgencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    referral_code: str
    payment_method: Optional[str] = None
    payment_email: Optional[str] = None
    minimum_payout_threshold: float
    payment_verified: bool = False
    active: bool = True
    created_at: Optional[datetime] = None


class MerchantReferralOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    shop_domain: str
    agency_id: int
    referred_at: Optional[datetime] = None
    lifetime_revenue: float = 0
    last_billed_amount: Optional[float] = None
    last_billed_at: Optional[datetime] = None
    active: bool = True


class PartnerPayoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    agency_id: int
    month_for: date
    gross_amount: float
    commission_amount: float
    paid: bool
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    payment_method: Optional[str] = None


class LinkMerchantRequest(BaseModel):
    shop_domain: str = Field(min_length=1)
    agency_id: int
    reassign: bool = False


class MarkPaidRequest(BaseModel):
    payout_ids: List[int] = Field(min_length=1)
    payment_reference: str = Field(min_length=1)
    payment_method: str = "manual"

    @field_validator("payout_ids", mode="before")
    @classmethod
    def split_ids(cls, v):
        # Accept "1, 2, 3" as sent by the admin form
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


# Merchant surface
class WidgetSettingsRequest(BaseModel):
    shop: str = Field(min_length=1)
    settings: Dict[str, Any] = {}


class AnalyticsEventRequest(BaseModel):
    shop: str = Field(min_length=1)
    event_type: str = Field(min_length=1, max_length=100)
    session_id: Optional[str] = None
    payload: Dict[str, Any] = {}


class UpgradePlanRequest(BaseModel):
    shop: str = Field(min_length=1)
    plan_name: str = Field(min_length=1)


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price: float
    interval: Optional[str] = None
    messages_limit: int
    trial_days: int
    features: List[str] = []
