import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.database import Agency, MerchantReferral, PendingReferral
from ..utils.helpers import normalize_shop_domain

logger = logging.getLogger(__name__)


class ReferralService:
    """Referral code capture on install and attribution after OAuth"""

    def __init__(self, db: Session):
        self.db = db

    def validate_code(self, referral_code: Optional[str]) -> Optional[Agency]:
        """
        Look up an active agency by referral code

        Args:
            referral_code: Code from the ``ref`` query parameter

        Returns:
            Agency: The agency when the code exists and is active, otherwise None
        """
        if not referral_code:
            return None

        agency = self.db.execute(
            select(Agency).where(Agency.referral_code == referral_code.strip())
        ).scalar_one_or_none()

        if agency and agency.active:
            logger.info(f"Valid referral code: {referral_code} ({agency.name})")
            return agency

        logger.info(f"Invalid or inactive referral code: {referral_code}")
        return None

    def landing_info(self, referral_code: Optional[str], app_name: str) -> Dict[str, Any]:
        agency = self.validate_code(referral_code)
        return {
            "referral_code": referral_code or None,
            "agency_name": agency.name if agency else None,
            "has_valid_referral": agency is not None,
            "app_name": app_name,
        }

    def stash(self, shop_domain: str, referral_code: Optional[str]) -> Optional[PendingReferral]:
        """
        Remember a valid referral for a shop until its OAuth callback

        A later stash for the same shop replaces the earlier code.
        """
        shop_domain = normalize_shop_domain(shop_domain)
        agency = self.validate_code(referral_code)
        if not shop_domain or not agency:
            return None

        pending = self.db.execute(
            select(PendingReferral).where(PendingReferral.shop_domain == shop_domain)
        ).scalar_one_or_none()

        if pending:
            pending.referral_code = agency.referral_code
            pending.agency_id = agency.id
        else:
            pending = PendingReferral(shop_domain=shop_domain, referral_code=agency.referral_code,
                                      agency_id=agency.id)
            self.db.add(pending)

        self.db.commit()
        logger.info(f"Stashed referral {agency.referral_code} for {shop_domain}")
        return pending

    def attribute(self, shop_domain: str, referral_code: Optional[str] = None) -> Optional[MerchantReferral]:
        """
        Link a freshly authenticated shop to its referring agency

        The pending referral stashed at install wins over ``referral_code``.
        A shop that is already linked to an agency keeps that link; relinking
        goes through the partner admin API.

        Args:
            shop_domain: Authenticated shop
            referral_code: Code forwarded through OAuth, if any

        Returns:
            MerchantReferral: The shop's referral row, or None without a referral
        """
        shop_domain = normalize_shop_domain(shop_domain)

        pending = self.db.execute(
            select(PendingReferral).where(PendingReferral.shop_domain == shop_domain)
        ).scalar_one_or_none()

        agency = None
        if pending:
            agency = self.db.get(Agency, pending.agency_id)
            if agency and not agency.active:
                agency = None
        if agency is None and referral_code:
            agency = self.validate_code(referral_code)

        existing = self.db.execute(
            select(MerchantReferral).where(MerchantReferral.shop_domain == shop_domain)
        ).scalar_one_or_none()

        if pending:
            self.db.delete(pending)

        # Reinstalls revive the original attribution
        if existing:
            if agency is not None and existing.agency_id != agency.id:
                logger.warning(
                    f"{shop_domain} already referred by agency {existing.agency_id}, "
                    f"ignoring referral from agency {agency.id}"
                )
            existing.active = True
            self.db.commit()
            return existing

        if agency is None:
            self.db.commit()
            return None

        referral = MerchantReferral(
            shop_domain=shop_domain,
            agency_id=agency.id,
            lifetime_revenue=Decimal("0"),
            active=True,
        )
        self.db.add(referral)
        self.db.commit()
        self.db.refresh(referral)

        logger.info(f"Linked {shop_domain} to agency {agency.id} ({agency.referral_code})")
        return referral
