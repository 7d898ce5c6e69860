import logging
import re
import secrets
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.database import Agency, MerchantReferral, PartnerPayout
from ..utils.helpers import normalize_shop_domain, quantize_money
from .exceptions import AgencyNotFound, DuplicateAgency, ReferralConflict

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10
UPDATABLE_FIELDS = (
    "name", "email", "payment_method", "payment_email", "bank_account_encrypted",
    "minimum_payout_threshold", "active", "payment_verified",
)

# Columns that cannot hold NULL; a None for these is ignored
REQUIRED_FIELDS = ("name", "email", "minimum_payout_threshold", "active", "payment_verified")


def generate_referral_code(name: str) -> str:
    """
    Referral code from the agency name

    Example: "Acme Growth Co" -> "ACMEGR-4F9A1C"
    """
    base = re.sub(r"[^a-zA-Z0-9]", "", name or "").upper()[:6] or "AGENCY"
    return f"{base}-{secrets.token_hex(3).upper()}"


class AgencyService:
    """Partner agency administration"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, agency_id: int) -> Agency:
        agency = self.db.get(Agency, agency_id)
        if not agency:
            raise AgencyNotFound(f"Agency {agency_id} not found")
        return agency

    def get_by_code(self, referral_code: str) -> Optional[Agency]:
        if not referral_code:
            return None
        return self.db.execute(
            select(Agency).where(Agency.referral_code == referral_code.strip())
        ).scalar_one_or_none()

    def _unique_referral_code(self, name: str) -> str:
        code = generate_referral_code(name)
        for _ in range(MAX_CODE_ATTEMPTS):
            if not self.get_by_code(code):
                break
            code = generate_referral_code(name)
        return code

    def create(self, name: str, email: str, payment_method: Optional[str] = None,
               payment_email: Optional[str] = None,
               minimum_payout_threshold: Optional[Decimal] = None) -> Agency:
        """
        Register a new agency with a fresh referral code

        Raises:
            DuplicateAgency: email or referral code already exists
        """
        agency = Agency(
            name=name,
            email=email,
            referral_code=self._unique_referral_code(name),
            payment_method=payment_method,
            payment_email=payment_email or email,
            minimum_payout_threshold=(minimum_payout_threshold
                                      if minimum_payout_threshold is not None
                                      else settings.DEFAULT_PAYOUT_THRESHOLD),
            active=True,
        )

        try:
            self.db.add(agency)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Agency create rejected for {email}: {e.orig}")
            raise DuplicateAgency("Email or referral code already exists")

        self.db.refresh(agency)
        logger.info(f"Created agency {agency.id} ({agency.name}) with code {agency.referral_code}")
        return agency

    def update(self, agency_id: int, changes: Dict[str, Any]) -> Agency:
        """
        Apply a partial update

        Every known key present in ``changes`` is applied, so optional payment
        details can be cleared with None. None is ignored for required columns.
        """
        agency = self.get(agency_id)

        for field in UPDATABLE_FIELDS:
            if field not in changes:
                continue
            value = changes[field]
            if value is None and field in REQUIRED_FIELDS:
                continue
            setattr(agency, field, value)

        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Agency update rejected for {agency_id}: {e.orig}")
            raise DuplicateAgency("Email or referral code already exists")

        self.db.refresh(agency)
        return agency

    def list_agencies(self, include_stats: bool = False) -> List[Dict[str, Any]]:
        agencies = self.db.execute(
            select(Agency).order_by(Agency.created_at.desc(), Agency.id.desc())
        ).scalars().all()

        referral_counts: Dict[int, int] = {}
        payout_counts: Dict[int, int] = {}
        if include_stats:
            referral_counts = dict(self.db.execute(
                select(MerchantReferral.agency_id, func.count(MerchantReferral.id))
                .group_by(MerchantReferral.agency_id)
            ).all())
            payout_counts = dict(self.db.execute(
                select(PartnerPayout.agency_id, func.count(PartnerPayout.id))
                .group_by(PartnerPayout.agency_id)
            ).all())

        result = []
        for agency in agencies:
            item = {"agency": agency}
            if include_stats:
                item["counts"] = {
                    "merchant_referrals": referral_counts.get(agency.id, 0),
                    "partner_payouts": payout_counts.get(agency.id, 0),
                }
            result.append(item)
        return result

    def get_with_stats(self, agency_id: int) -> Dict[str, Any]:
        """Agency with active merchants, last 12 ledger rows and balance figures"""
        agency = self.get(agency_id)

        merchants = [m for m in agency.merchant_referrals if m.active]
        recent_payouts = list(agency.partner_payouts)[:12]

        stats = {
            "total_merchants": len(merchants),
            "lifetime_revenue": quantize_money(sum((Decimal(m.lifetime_revenue or 0) for m in merchants),
                                                   Decimal("0"))),
            "total_earned": quantize_money(sum((Decimal(p.commission_amount or 0) for p in recent_payouts),
                                               Decimal("0"))),
            "unpaid_balance": quantize_money(sum((Decimal(p.commission_amount or 0)
                                                  for p in recent_payouts if not p.paid), Decimal("0"))),
        }

        return {
            "agency": agency,
            "merchants": merchants,
            "payouts": recent_payouts,
            "stats": stats,
        }

    def link_merchant(self, shop_domain: str, agency_id: int, reassign: bool = False) -> MerchantReferral:
        """
        Attribute a shop to an agency by hand

        An existing link to another agency is only replaced when ``reassign``
        is set; revenue already booked stays with the previous agency's ledger.

        Raises:
            AgencyNotFound: unknown agency
            ReferralConflict: shop already linked elsewhere and reassign not set
        """
        shop_domain = normalize_shop_domain(shop_domain)
        self.get(agency_id)

        referral = self.db.execute(
            select(MerchantReferral).where(MerchantReferral.shop_domain == shop_domain)
        ).scalar_one_or_none()

        if referral and referral.agency_id != agency_id and not reassign:
            raise ReferralConflict(f"{shop_domain} is already linked to agency {referral.agency_id}")

        if referral:
            if referral.agency_id != agency_id:
                logger.info(f"Reassigning {shop_domain} from agency {referral.agency_id} to {agency_id}")
            referral.agency_id = agency_id
            referral.active = True
        else:
            referral = MerchantReferral(shop_domain=shop_domain, agency_id=agency_id, active=True,
                                        lifetime_revenue=Decimal("0"))
            self.db.add(referral)

        self.db.commit()
        self.db.refresh(referral)
        return referral
