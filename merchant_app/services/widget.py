import logging
from datetime import timedelta
from typing import Any, Dict

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..models.database import AnalyticsEvent, ChatConversation, WidgetConfig
from ..utils.helpers import normalize_shop_domain, utcnow

logger = logging.getLogger(__name__)

DEFAULT_WIDGET_SETTINGS = {
    "enabled": True,
    "position": "bottom-right",
    "primary_color": "#008060",
    "text_color": "#ffffff",
    "greeting": "Hi! How can I help you today?",
    "bot_name": "Jarvis",
    "show_recommendations": True,
    "cart_recovery": False,
}


class WidgetService:
    """Storefront widget settings"""

    def __init__(self, db: Session):
        self.db = db

    def get_settings(self, shop_domain: str) -> Dict[str, Any]:
        """Stored settings layered over the defaults"""
        config = self.db.execute(
            select(WidgetConfig).where(WidgetConfig.shop_domain == normalize_shop_domain(shop_domain))
        ).scalar_one_or_none()

        merged = dict(DEFAULT_WIDGET_SETTINGS)
        if config and config.options:
            merged.update(config.options)
        return merged

    def update_settings(self, shop_domain: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        shop_domain = normalize_shop_domain(shop_domain)
        changes = {k: v for k, v in changes.items() if v is not None}

        config = self.db.execute(
            select(WidgetConfig).where(WidgetConfig.shop_domain == shop_domain)
        ).scalar_one_or_none()

        if config:
            # Reassign so the JSON column is flagged dirty
            config.options = {**(config.options or {}), **changes}
        else:
            config = WidgetConfig(shop_domain=shop_domain, options=changes)
            self.db.add(config)

        self.db.commit()
        logger.info(f"Updated widget settings for {shop_domain}: {sorted(changes)}")
        return self.get_settings(shop_domain)


class AnalyticsService:
    """Widget analytics events and per-shop summaries"""

    def __init__(self, db: Session):
        self.db = db

    def record_event(self, shop_domain: str, event_type: str, session_id: str = None,
                     payload: Dict[str, Any] = None) -> AnalyticsEvent:
        event = AnalyticsEvent(
            shop_domain=normalize_shop_domain(shop_domain),
            event_type=event_type,
            session_id=session_id,
            payload=payload or {},
        )
        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)
        return event

    def summary(self, shop_domain: str, days: int = 30) -> Dict[str, Any]:
        shop_domain = normalize_shop_domain(shop_domain)
        since = utcnow() - timedelta(days=days)

        events = dict(self.db.execute(
            select(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
            .where(AnalyticsEvent.shop_domain == shop_domain, AnalyticsEvent.created_at >= since)
            .group_by(AnalyticsEvent.event_type)
        ).all())

        conversations, messages = self.db.execute(
            select(func.count(ChatConversation.id), func.coalesce(func.sum(ChatConversation.message_count), 0))
            .where(ChatConversation.shop_domain == shop_domain, ChatConversation.started_at >= since)
        ).one()

        return {
            "shop": shop_domain,
            "days": days,
            "events": events,
            "total_events": sum(events.values()),
            "conversations": conversations,
            "messages": int(messages or 0),
            "avg_messages_per_conversation": round(messages / conversations, 1) if conversations else 0,
        }
