import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.database import MerchantReferral, PartnerPayout
from ..utils.helpers import month_start, next_month, normalize_shop_domain, quantize_money, to_decimal, utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_UPDATE = "app_subscriptions/update"
RECURRING_CHARGE_ACTIVATED = "recurring_application_charges/activated"
ONE_TIME_PURCHASE_UPDATE = "app_purchases_one_time/update"

BILLING_TOPICS = (SUBSCRIPTION_UPDATE, RECURRING_CHARGE_ACTIVATED, ONE_TIME_PURCHASE_UPDATE)


def extract_amount(payload: Dict[str, Any], topic: str) -> Decimal:
    """
    Pull the billed amount out of a billing webhook payload

    Args:
        payload: Parsed webhook JSON
        topic: Shopify topic, e.g. ``app_subscriptions/update``

    Returns:
        Decimal: Billed amount, Decimal("0") when absent or unknown
    """
    if not isinstance(payload, dict):
        return Decimal("0")

    topic = (topic or "").lower()

    if topic == SUBSCRIPTION_UPDATE:
        subscription = payload.get("app_subscription") or {}
        line_items = subscription.get("line_items") or []
        if not line_items or not isinstance(line_items[0], dict):
            return Decimal("0")
        plan = line_items[0].get("plan") or {}
        price = (plan.get("pricing_details") or {}).get("price") or {}
        return to_decimal(price.get("amount") if isinstance(price, dict) else price)

    if topic == RECURRING_CHARGE_ACTIVATED:
        return to_decimal(payload.get("price"))

    if topic == ONE_TIME_PURCHASE_UPDATE:
        price = payload.get("admin_graphql_api_price")
        if isinstance(price, dict):
            return to_decimal(price.get("amount"))
        return to_decimal(payload.get("price"))

    return Decimal("0")


def compute_commission(amount: Decimal, rate: Optional[Decimal] = None) -> Decimal:
    """Commission on one billing event, rounded half up to cents"""
    rate = settings.COMMISSION_RATE if rate is None else rate
    return quantize_money(to_decimal(amount) * rate)


def current_month(now: Optional[datetime] = None) -> date:
    """Ledger bucket for ``now``"""
    return month_start(now)


class CommissionService:
    """Records agency commission from merchant billing events"""

    def __init__(self, db: Session):
        self.db = db

    def get_active_referral(self, shop_domain: str) -> Optional[MerchantReferral]:
        return self.db.execute(
            select(MerchantReferral).where(
                MerchantReferral.shop_domain == shop_domain,
                MerchantReferral.active.is_(True)
            )
        ).scalar_one_or_none()

    def capture(self, shop_domain: str, topic: str, payload: Dict[str, Any]) -> Optional[PartnerPayout]:
        """
        Book one billing webhook against the referring agency

        Args:
            shop_domain: Shop that was billed
            topic: Billing webhook topic
            payload: Parsed webhook JSON

        Returns:
            PartnerPayout: Ledger row that received the commission, or None on no-op
        """
        amount = quantize_money(extract_amount(payload, topic))
        if amount <= 0:
            logger.info(f"No billable amount in {topic} webhook for {shop_domain}")
            return None

        referral = self.get_active_referral(normalize_shop_domain(shop_domain))
        if not referral or not referral.agency_id:
            logger.info(f"No active agency referral for {shop_domain}, skipping commission")
            return None

        return self.record_billing(referral, amount)

    def record_billing(self, referral: MerchantReferral, amount: Decimal,
                       now: Optional[datetime] = None) -> PartnerPayout:
        """Update the referral totals and the agency's monthly ledger row in one transaction"""
        now = now or utcnow()
        commission = compute_commission(amount)

        try:
            referral.lifetime_revenue = quantize_money((referral.lifetime_revenue or Decimal("0")) + amount)
            referral.last_billed_amount = amount
            referral.last_billed_at = now

            payout = self._open_payout_row(referral.agency_id, current_month(now))
            payout.gross_amount = quantize_money((payout.gross_amount or Decimal("0")) + amount)
            payout.commission_amount = quantize_money((payout.commission_amount or Decimal("0")) + commission)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error recording billing for {referral.shop_domain}: {e}")
            raise

        self.db.refresh(payout)
        logger.info(
            f"Processed billing for {referral.shop_domain}: ${amount}, commission: ${commission} "
            f"(agency {referral.agency_id}, month {payout.month_for.isoformat()})"
        )
        return payout

    def _open_payout_row(self, agency_id: int, month: date) -> PartnerPayout:
        """
        Unpaid ledger row for ``month``, created when missing

        Settled rows are never touched again; a month whose row is already
        paid rolls the booking forward to the next open month.
        A row created by a concurrent capture between the lookup and the insert
        is read back instead of failing the booking.
        """
        collided = False
        while True:
            payout = self.db.execute(
                select(PartnerPayout)
                .where(PartnerPayout.agency_id == agency_id, PartnerPayout.month_for == month)
                .with_for_update()
            ).scalar_one_or_none()

            if payout is None:
                payout = PartnerPayout(
                    agency_id=agency_id,
                    month_for=month,
                    gross_amount=Decimal("0"),
                    commission_amount=Decimal("0"),
                    commission_rate=settings.COMMISSION_RATE,
                    paid=False
                )
                try:
                    with self.db.begin_nested():
                        self.db.add(payout)
                except IntegrityError:
                    if collided:
                        raise
                    collided = True
                    logger.warning(f"Payout row for agency {agency_id}, month {month.isoformat()} "
                                   f"was created concurrently, re-reading it")
                    continue
                return payout

            if not payout.paid:
                return payout

            logger.warning(f"Payout {payout.id} for agency {agency_id} already paid, booking into next month")
            month = next_month(month)
