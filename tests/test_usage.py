"""Tests for trial handling and per-plan conversation limits."""

from datetime import datetime, timedelta

from freezegun import freeze_time
from sqlalchemy import select

from merchant_app.models.database import ChatConversation, Plan, Subscription
from merchant_app.services.usage import UsageService, conversation_limit_for

SHOP = "demo.myshopify.com"


def _subscribe(db, plan_name, status="ACTIVE"):
    plan = db.execute(select(Plan).where(Plan.name == plan_name)).scalar_one()
    subscription = Subscription(shop_domain=SHOP, plan_id=plan.id, status=status, price=plan.price,
                                messages_used=0, messages_limit=plan.messages_limit)
    db.add(subscription)
    db.commit()
    return subscription


def _conversations(db, count, started_at):
    for i in range(count):
        db.add(ChatConversation(shop_domain=SHOP, session_id=f"s-{started_at.isoformat()}-{i}",
                                started_at=started_at, last_message_at=started_at, message_count=1))
    db.commit()


class TestPlanLimits:

    def test_essential_is_capped(self):
        assert conversation_limit_for("Essential") == 1000

    def test_other_plans_unlimited(self):
        assert conversation_limit_for("Sales Pro") is None
        assert conversation_limit_for("Enterprise") is None
        assert conversation_limit_for(None) is None


class TestCheckConversationLimit:

    def test_unknown_shop(self, db):
        result = UsageService(db).check_conversation_limit(SHOP)
        assert result["allowed"] is False
        assert result["reason"] == "Shop not found"

    @freeze_time("2026-03-10 12:00:00")
    def test_in_trial(self, db, make_shop):
        make_shop(SHOP, installed_days_ago=3)
        _conversations(db, 4, datetime(2026, 3, 8))

        result = UsageService(db).check_conversation_limit(SHOP)
        assert result["allowed"] is True
        assert result["is_trial"] is True
        assert result["used"] == 4
        assert result["limit"] == "Unlimited (Trial)"
        assert result["trial_days_remaining"] == 11

    def test_trial_expires_after_fourteen_days(self, db, make_shop):
        with freeze_time("2026-03-01 00:00:00"):
            make_shop(SHOP)
        service = UsageService(db)

        with freeze_time("2026-03-15 00:00:00"):
            assert service.check_conversation_limit(SHOP)["allowed"] is True
        with freeze_time("2026-03-15 00:00:01"):
            result = service.check_conversation_limit(SHOP)
        assert result["allowed"] is False
        assert result["trial_expired"] is True
        assert result["reason"] == "Trial period expired, subscription required"

    @freeze_time("2026-04-20 09:00:00")
    def test_essential_limit_counts_current_month(self, db, plans, make_shop):
        make_shop(SHOP, installed_days_ago=60)
        _subscribe(db, "Essential")
        _conversations(db, 999, datetime(2026, 4, 2))
        _conversations(db, 5, datetime(2026, 3, 30))
        service = UsageService(db)

        result = service.check_conversation_limit(SHOP)
        assert result["allowed"] is True
        assert result["used"] == 999
        assert result["remaining"] == 1
        assert result["plan_name"] == "Essential"

        _conversations(db, 1, datetime(2026, 4, 19))
        result = service.check_conversation_limit(SHOP)
        assert result["allowed"] is False
        assert result["remaining"] == 0
        assert result["usage_percentage"] == 100.0

    @freeze_time("2026-04-20 09:00:00")
    def test_sales_pro_unlimited(self, db, plans, make_shop):
        make_shop(SHOP, installed_days_ago=60)
        _subscribe(db, "Sales Pro")
        _conversations(db, 1500, datetime(2026, 4, 2))

        result = UsageService(db).check_conversation_limit(SHOP)
        assert result["allowed"] is True
        assert result["is_unlimited"] is True
        assert result["limit"] == "Unlimited"

    @freeze_time("2026-04-20 09:00:00")
    def test_cancelled_subscription_after_trial(self, db, plans, make_shop):
        make_shop(SHOP, installed_days_ago=60)
        _subscribe(db, "Sales Pro", status="CANCELLED")
        assert UsageService(db).check_conversation_limit(SHOP)["allowed"] is False


class TestRecordConversation:

    def test_new_then_existing_session(self, db):
        service = UsageService(db)
        assert service.is_new_conversation(SHOP, "abc") is True

        first = service.record_conversation(SHOP, "abc", customer_id=42)
        second = service.record_conversation(SHOP, "abc")

        assert first.id == second.id
        assert second.message_count == 2
        assert second.customer_id == "42"
        assert service.is_new_conversation(SHOP, "abc") is False

    def test_increment_message_usage(self, db, plans):
        _subscribe(db, "Essential")
        result = UsageService(db).increment_message_usage(SHOP)
        assert result == {"success": True, "new_usage": 1, "remaining_messages": 999}

    def test_increment_without_subscription(self, db):
        assert UsageService(db).increment_message_usage(SHOP)["success"] is False

    def test_trial_end_is_inclusive(self, db, make_shop):
        shop = make_shop(SHOP)
        at_end = shop.installed_at + timedelta(days=14)
        assert UsageService(db).check_conversation_limit(SHOP, now=at_end)["allowed"] is True
