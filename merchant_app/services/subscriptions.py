import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..models.database import Plan, Subscription
from ..utils.helpers import normalize_shop_domain, utcnow
from .shopify_client import ShopifyClient

logger = logging.getLogger(__name__)

BILLING_PERIOD = timedelta(days=30)

DEFAULT_PLANS = [
    {
        "name": "Essential",
        "price": Decimal("9.99"),
        "messages_limit": 1000,
        "trial_days": 14,
        "features": ["1,000 conversations/month", "Widget customization", "Email support"],
    },
    {
        "name": "Sales Pro",
        "price": Decimal("29.99"),
        "messages_limit": -1,
        "trial_days": 14,
        "features": ["Unlimited conversations", "Product recommendations", "Analytics dashboard",
                     "Priority support"],
    },
]


def seed_plans(db: Session) -> int:
    """Insert the default plans that are missing; returns how many were added"""
    existing = set(db.execute(select(Plan.name)).scalars().all())
    added = 0
    for plan in DEFAULT_PLANS:
        if plan["name"] not in existing:
            db.add(Plan(**plan, is_active=True))
            added += 1
    if added:
        db.commit()
        logger.info(f"Seeded {added} billing plans")
    return added


class SubscriptionService:
    """Plans, subscription status and Shopify subscription sync"""

    def __init__(self, db: Session, shopify: Optional[ShopifyClient] = None):
        self.db = db
        self.shopify = shopify

    def list_plans(self) -> List[Plan]:
        return self.db.execute(
            select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price.asc())
        ).scalars().all()

    def get_plan(self, name: str) -> Optional[Plan]:
        return self.db.execute(select(Plan).where(Plan.name == name)).scalar_one_or_none()

    def current(self, shop_domain: str) -> Optional[Subscription]:
        return self.db.execute(
            select(Subscription)
            .where(Subscription.shop_domain == normalize_shop_domain(shop_domain))
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def status(self, shop_domain: str) -> Dict[str, Any]:
        subscription = self.current(shop_domain)
        if not subscription:
            return {"has_subscription": False, "subscription": None}

        now = utcnow()
        return {
            "has_subscription": subscription.status == "ACTIVE",
            "subscription": {
                "id": subscription.id,
                "plan_name": subscription.plan.name if subscription.plan else None,
                "status": subscription.status,
                "price": float(subscription.price) if subscription.price is not None else None,
                "messages_used": subscription.messages_used,
                "messages_limit": subscription.messages_limit,
                "current_period_start": (subscription.current_period_start.isoformat()
                                         if subscription.current_period_start else None),
                "current_period_end": (subscription.current_period_end.isoformat()
                                       if subscription.current_period_end else None),
                "days_remaining": (max(0, (subscription.current_period_end - now).days)
                                   if subscription.current_period_end else None),
            },
        }

    def sync_from_webhook(self, shop_domain: str, payload: Dict[str, Any]) -> Optional[Subscription]:
        """
        Mirror an ``app_subscriptions/update`` payload into the local table

        A missing subscription is created only for an active payload, on the
        plan matching the payload name or else the cheapest active plan.
        """
        shop_domain = normalize_shop_domain(shop_domain)
        data = payload.get("app_subscription") or {}
        status = (data.get("status") or "").upper()
        shopify_id = data.get("admin_graphql_api_id") or data.get("id")
        shopify_id = str(shopify_id) if shopify_id else None
        now = utcnow()

        subscription = None
        if shopify_id:
            subscription = self.db.execute(
                select(Subscription).where(
                    Subscription.shop_domain == shop_domain,
                    Subscription.shopify_subscription_id == shopify_id
                )
            ).scalar_one_or_none()
        if subscription is None:
            subscription = self.db.execute(
                select(Subscription).where(
                    Subscription.shop_domain == shop_domain,
                    Subscription.status == "ACTIVE"
                )
            ).scalars().first()

        if subscription is None:
            if status != "ACTIVE":
                logger.info(f"Ignoring {status or 'status-less'} subscription update for {shop_domain} "
                            f"without local record")
                return None

            plan = self.get_plan(data.get("name") or "") or self.db.execute(
                select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price.asc())
            ).scalars().first()
            if not plan:
                logger.error(f"No plans available to create subscription for {shop_domain}")
                return None

            subscription = Subscription(
                shop_domain=shop_domain,
                plan_id=plan.id,
                status=status,
                shopify_subscription_id=shopify_id,
                billing_cycle="monthly",
                price=plan.price,
                current_period_start=now,
                current_period_end=now + BILLING_PERIOD,
                messages_used=0,
                messages_limit=plan.messages_limit,
            )
            self.db.add(subscription)
            self.db.commit()
            self.db.refresh(subscription)
            logger.info(f"Created subscription {subscription.id} for {shop_domain}")
            return subscription

        if not status:
            logger.warning(f"Subscription update for {shop_domain} carried no status; leaving record as is")
            return subscription

        subscription.status = status
        if shopify_id:
            subscription.shopify_subscription_id = shopify_id
        if status == "CANCELLED":
            subscription.cancelled_at = now
        elif status == "ACTIVE":
            subscription.current_period_start = now
            subscription.current_period_end = now + BILLING_PERIOD
            subscription.messages_used = 0

        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"Updated subscription {subscription.id} for {shop_domain} to {status}")
        return subscription

    def start_upgrade(self, shop_domain: str, access_token: str, plan_name: str) -> Dict[str, Any]:
        """
        Ask Shopify to charge the shop for ``plan_name``

        Returns:
            dict: plan name and Shopify's confirmation URL for the merchant

        Raises:
            ValueError: unknown plan
            ShopifyAPIError: Shopify refused the charge
        """
        plan = self.get_plan(plan_name)
        if not plan or not plan.is_active:
            raise ValueError(f"Unknown plan: {plan_name}")

        shopify = self.shopify or ShopifyClient()
        result = shopify.create_app_subscription(
            normalize_shop_domain(shop_domain),
            access_token,
            plan_name=plan.name,
            price=float(plan.price),
            return_url=f"{settings.APP_URL}/app/billing?shop={normalize_shop_domain(shop_domain)}",
            trial_days=plan.trial_days or 0,
            test=settings.BILLING_TEST_MODE,
        )
        logger.info(f"Started {plan.name} subscription for {shop_domain}")
        return {"plan": plan.name, "confirmation_url": result["confirmation_url"],
                "subscription": result["subscription"]}
