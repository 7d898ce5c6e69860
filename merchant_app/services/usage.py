import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..models.database import ChatConversation, Shop, Subscription
from ..utils.helpers import month_start, normalize_shop_domain, utcnow

logger = logging.getLogger(__name__)

UNLIMITED = "Unlimited"


def conversation_limit_for(plan_name: Optional[str]) -> Optional[int]:
    """Monthly conversation cap for a plan; None means unlimited"""
    return settings.PLAN_CONVERSATION_LIMITS.get((plan_name or "").strip().lower())


def trial_end_for(installed_at: datetime) -> datetime:
    return installed_at + timedelta(days=settings.TRIAL_DAYS)


class UsageService:
    """Per-shop conversation limits and usage counters"""

    def __init__(self, db: Session):
        self.db = db

    def active_subscription(self, shop_domain: str) -> Optional[Subscription]:
        return self.db.execute(
            select(Subscription)
            .options(joinedload(Subscription.plan))
            .where(Subscription.shop_domain == shop_domain, Subscription.status == "ACTIVE")
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def count_conversations(self, shop_domain: str, since: datetime) -> int:
        return self.db.execute(
            select(func.count(ChatConversation.id)).where(
                ChatConversation.shop_domain == shop_domain,
                ChatConversation.started_at >= since
            )
        ).scalar_one()

    def check_conversation_limit(self, shop_domain: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Decide whether a shop may start another conversation

        Args:
            shop_domain: Shop asking
            now: Evaluation time, defaults to now (UTC)

        Returns:
            dict: ``allowed`` plus usage, limit, plan and trial details
        """
        shop_domain = normalize_shop_domain(shop_domain)
        now = now or utcnow()

        shop = self.db.execute(select(Shop).where(Shop.shop_domain == shop_domain)).scalar_one_or_none()
        if not shop:
            return {
                "allowed": False,
                "reason": "Shop not found",
                "used": 0,
                "limit": 0,
                "remaining": 0,
                "plan_name": "No Plan",
                "usage_percentage": 0,
                "is_trial": False,
                "trial_expired": False,
            }

        trial_end = trial_end_for(shop.installed_at)
        in_trial = now <= trial_end
        days_in_trial = (now - shop.installed_at).days

        subscription = self.active_subscription(shop_domain)

        if not subscription and not in_trial:
            return {
                "allowed": False,
                "reason": "Trial period expired, subscription required",
                "used": 0,
                "limit": 0,
                "remaining": 0,
                "plan_name": "Trial Expired",
                "usage_percentage": 0,
                "is_trial": False,
                "trial_expired": True,
                "trial_end_date": trial_end.isoformat(),
                "days_in_trial": days_in_trial,
            }

        if not subscription:
            used = self.count_conversations(shop_domain, shop.installed_at)
            return {
                "allowed": True,
                "reason": "Free trial period",
                "used": used,
                "limit": "Unlimited (Trial)",
                "remaining": UNLIMITED,
                "plan_name": f"{settings.TRIAL_DAYS}-Day Free Trial",
                "usage_percentage": 0,
                "is_trial": True,
                "trial_expired": False,
                "trial_end_date": trial_end.isoformat(),
                "trial_days_remaining": math.ceil((trial_end - now).total_seconds() / 86400),
                "days_in_trial": days_in_trial,
            }

        period_start = month_start(now)
        period_start_dt = datetime(period_start.year, period_start.month, period_start.day)
        used = self.count_conversations(shop_domain, period_start_dt)

        plan_name = subscription.plan.name if subscription.plan else "Unknown"
        limit = conversation_limit_for(plan_name)
        unlimited = limit is None

        return {
            "allowed": unlimited or used < limit,
            "reason": None if unlimited or used < limit else "Monthly conversation limit reached",
            "used": used,
            "limit": UNLIMITED if unlimited else limit,
            "remaining": UNLIMITED if unlimited else max(0, limit - used),
            "plan_name": plan_name,
            "month_start": period_start_dt.isoformat(),
            "usage_percentage": 0 if unlimited else round(used / limit * 100, 1),
            "is_unlimited": unlimited,
            "is_trial": False,
            "trial_expired": False,
        }

    def record_conversation(self, shop_domain: str, session_id: str,
                            customer_id: Optional[str] = None) -> ChatConversation:
        """Start a conversation for ``session_id`` or add a message to the open one"""
        shop_domain = normalize_shop_domain(shop_domain)
        now = utcnow()

        conversation = self.db.execute(
            select(ChatConversation).where(
                ChatConversation.shop_domain == shop_domain,
                ChatConversation.session_id == session_id
            )
        ).scalar_one_or_none()

        if conversation:
            conversation.message_count = (conversation.message_count or 0) + 1
            conversation.last_message_at = now
            if customer_id and not conversation.customer_id:
                conversation.customer_id = str(customer_id)
        else:
            conversation = ChatConversation(
                shop_domain=shop_domain,
                session_id=session_id,
                customer_id=str(customer_id) if customer_id else None,
                started_at=now,
                last_message_at=now,
                message_count=1,
            )
            self.db.add(conversation)

        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def is_new_conversation(self, shop_domain: str, session_id: str) -> bool:
        return self.db.execute(
            select(ChatConversation.id).where(
                ChatConversation.shop_domain == normalize_shop_domain(shop_domain),
                ChatConversation.session_id == session_id
            )
        ).first() is None

    def increment_message_usage(self, shop_domain: str, increment: int = 1) -> Dict[str, Any]:
        """Bump the active subscription's message counter"""
        subscription = self.active_subscription(normalize_shop_domain(shop_domain))
        if not subscription:
            return {"success": False, "error": "No subscription found"}

        new_usage = (subscription.messages_used or 0) + increment
        limit = subscription.messages_limit
        if limit is not None and limit >= 0 and new_usage > limit:
            return {"success": False, "error": "Message limit exceeded", "usage_blocked": True}

        subscription.messages_used = new_usage
        self.db.commit()

        return {
            "success": True,
            "new_usage": new_usage,
            "remaining_messages": UNLIMITED if limit is None or limit < 0 else limit - new_usage,
        }
