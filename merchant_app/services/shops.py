import logging
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..models.database import (
    AnalyticsEvent, ChatConversation, InstallationLog, MerchantReferral, OAuthSession,
    PendingReferral, Shop, Subscription, WidgetConfig
)
from ..utils.helpers import normalize_shop_domain, utcnow

logger = logging.getLogger(__name__)


def offline_session_id(shop_domain: str) -> str:
    return f"offline_{shop_domain}"


class ShopService:
    """Shop and OAuth session records across install, uninstall and GDPR redaction"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, shop_domain: str) -> Optional[Shop]:
        return self.db.execute(
            select(Shop).where(Shop.shop_domain == normalize_shop_domain(shop_domain))
        ).scalar_one_or_none()

    def access_token(self, shop_domain: str) -> Optional[str]:
        shop = self.get(shop_domain)
        if shop and shop.is_active and shop.access_token:
            return shop.access_token
        return None

    def save_installation(self, shop_domain: str, access_token: str, scope: Optional[str] = None) -> Shop:
        """
        Persist the offline session and shop record after a successful OAuth

        Reinstalls bump ``token_version`` and clear ``uninstalled_at``.
        """
        shop_domain = normalize_shop_domain(shop_domain)
        now = utcnow()

        try:
            oauth_session = self.db.get(OAuthSession, offline_session_id(shop_domain))
            if oauth_session:
                oauth_session.access_token = access_token
                oauth_session.scope = scope
            else:
                self.db.add(OAuthSession(
                    id=offline_session_id(shop_domain),
                    shop=shop_domain,
                    is_online=False,
                    scope=scope,
                    access_token=access_token,
                ))

            shop = self.get(shop_domain)
            if shop:
                shop.access_token = access_token
                shop.scope = scope
                shop.is_active = True
                shop.token_version = (shop.token_version or 0) + 1
                shop.uninstalled_at = None
            else:
                shop = Shop(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    scope=scope,
                    installed_at=now,
                    is_active=True,
                    token_version=1,
                )
                self.db.add(shop)
            self.db.flush()

            self.db.add(InstallationLog(
                shop_domain=shop_domain,
                action="INSTALLED",
                details={"token_version": shop.token_version, "scopes": scope, "timestamp": now.isoformat()},
            ))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Database error saving installation for {shop_domain}: {e}")
            raise

        self.db.refresh(shop)
        logger.info(f"Shop data saved for {shop_domain} (token version {shop.token_version})")
        return shop

    def handle_uninstall(self, shop_domain: str) -> Dict[str, Any]:
        """Drop tokens, deactivate the shop and its referral link"""
        shop_domain = normalize_shop_domain(shop_domain)

        try:
            deleted_sessions = self.db.execute(
                delete(OAuthSession).where(OAuthSession.shop == shop_domain)
            ).rowcount
            deactivated_shops = self.db.execute(
                update(Shop)
                .where(Shop.shop_domain == shop_domain)
                .values(access_token=None, is_active=False, uninstalled_at=utcnow())
            ).rowcount
            deactivated_referrals = self.db.execute(
                update(MerchantReferral)
                .where(MerchantReferral.shop_domain == shop_domain)
                .values(active=False)
            ).rowcount
            self.db.add(InstallationLog(shop_domain=shop_domain, action="UNINSTALLED",
                                        details={"sessions_deleted": deleted_sessions}))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        summary = {
            "sessions": deleted_sessions,
            "shops": deactivated_shops,
            "referrals": deactivated_referrals,
        }
        logger.info(f"Cleaned up uninstalled shop {shop_domain}: {summary}")
        return summary

    def redact_shop(self, shop_domain: str) -> Dict[str, int]:
        """
        Remove everything held for a shop (shop/redact)

        Subscriptions are cancelled rather than deleted, and the referral link
        is only deactivated; both back the partner ledger.
        """
        shop_domain = normalize_shop_domain(shop_domain)

        try:
            summary = {
                "sessions": self.db.execute(
                    delete(OAuthSession).where(OAuthSession.shop == shop_domain)).rowcount,
                "shops": self.db.execute(
                    delete(Shop).where(Shop.shop_domain == shop_domain)).rowcount,
                "interactions": self.db.execute(
                    delete(ChatConversation).where(ChatConversation.shop_domain == shop_domain)).rowcount,
                "analytics_events": self.db.execute(
                    delete(AnalyticsEvent).where(AnalyticsEvent.shop_domain == shop_domain)).rowcount,
                "configs": self.db.execute(
                    delete(WidgetConfig).where(WidgetConfig.shop_domain == shop_domain)).rowcount,
                "pending_referrals": self.db.execute(
                    delete(PendingReferral).where(PendingReferral.shop_domain == shop_domain)).rowcount,
                "subscriptions": self.db.execute(
                    update(Subscription)
                    .where(Subscription.shop_domain == shop_domain, Subscription.status != "CANCELLED")
                    .values(status="CANCELLED", cancelled_at=utcnow())).rowcount,
            }
            self.db.execute(
                update(MerchantReferral).where(MerchantReferral.shop_domain == shop_domain).values(active=False)
            )
            self.db.add(InstallationLog(shop_domain=shop_domain, action="REDACTED", details=summary))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Redacted shop {shop_domain}: {summary}")
        return summary

    def redact_customer(self, shop_domain: str, customer_id: Optional[str]) -> int:
        """Delete one customer's conversations (customers/redact)"""
        if not customer_id:
            return 0

        shop_domain = normalize_shop_domain(shop_domain)
        try:
            deleted = self.db.execute(
                delete(ChatConversation).where(
                    ChatConversation.shop_domain == shop_domain,
                    ChatConversation.customer_id == str(customer_id)
                )
            ).rowcount
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Deleted {deleted} conversations for customer {customer_id} of {shop_domain}")
        return deleted

    def customer_data(self, shop_domain: str, customer_id: Optional[str]) -> Dict[str, Any]:
        """What is stored about a customer (customers/data_request)"""
        if not customer_id:
            return {"customer_id": None, "conversations": []}

        conversations = self.db.execute(
            select(ChatConversation).where(
                ChatConversation.shop_domain == normalize_shop_domain(shop_domain),
                ChatConversation.customer_id == str(customer_id)
            ).order_by(ChatConversation.started_at.desc())
        ).scalars().all()

        return {
            "customer_id": str(customer_id),
            "conversations": [
                {
                    "session_id": c.session_id,
                    "started_at": c.started_at.isoformat() if c.started_at else None,
                    "message_count": c.message_count,
                }
                for c in conversations
            ],
        }
