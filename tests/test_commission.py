"""Tests for commission capture into the monthly partner ledger."""

from datetime import date, datetime
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time
from sqlalchemy import select

from merchant_app.models.database import MerchantReferral, PartnerPayout
from merchant_app.services.commission import (
    ONE_TIME_PURCHASE_UPDATE,
    RECURRING_CHARGE_ACTIVATED,
    SUBSCRIPTION_UPDATE,
    CommissionService,
    compute_commission,
    current_month,
    extract_amount,
)
from tests.helpers import subscription_payload

SHOP = "demo.myshopify.com"


def _payouts(db, agency_id):
    db.expire_all()
    return db.execute(
        select(PartnerPayout).where(PartnerPayout.agency_id == agency_id).order_by(PartnerPayout.month_for)
    ).scalars().all()


class TestComputeCommission:

    @pytest.mark.parametrize("amount,expected", [
        ("100", "25.00"),
        ("29.99", "7.50"),
        ("9.99", "2.50"),
        ("0.02", "0.01"),
        ("0", "0.00"),
    ])
    def test_quarter_rounded_half_up(self, amount, expected):
        assert compute_commission(Decimal(amount)) == Decimal(expected)

    def test_explicit_rate(self):
        assert compute_commission(Decimal("200"), Decimal("0.10")) == Decimal("20.00")


class TestExtractAmount:

    def test_subscription_update_shape(self):
        assert extract_amount(subscription_payload("29.99"), SUBSCRIPTION_UPDATE) == Decimal("29.99")

    def test_subscription_without_line_items(self):
        payload = {"app_subscription": {"status": "ACTIVE", "line_items": []}}
        assert extract_amount(payload, SUBSCRIPTION_UPDATE) == Decimal("0")

    def test_recurring_charge_shape(self):
        assert extract_amount({"id": 1, "price": "9.99"}, RECURRING_CHARGE_ACTIVATED) == Decimal("9.99")

    def test_one_time_purchase_shape(self):
        payload = {"admin_graphql_api_price": {"amount": "50.00", "currency_code": "USD"}}
        assert extract_amount(payload, ONE_TIME_PURCHASE_UPDATE) == Decimal("50.00")

    def test_one_time_purchase_falls_back_to_price(self):
        assert extract_amount({"price": 12.5}, ONE_TIME_PURCHASE_UPDATE) == Decimal("12.5")

    def test_unknown_topic_is_zero(self):
        assert extract_amount({"price": "9.99"}, "orders/create") == Decimal("0")

    def test_unparseable_amount_is_zero(self):
        assert extract_amount({"price": "abc"}, RECURRING_CHARGE_ACTIVATED) == Decimal("0")
        assert extract_amount({"price": None}, RECURRING_CHARGE_ACTIVATED) == Decimal("0")

    def test_non_dict_payload_is_zero(self):
        assert extract_amount(["price"], RECURRING_CHARGE_ACTIVATED) == Decimal("0")


class TestCurrentMonth:

    def test_first_day_of_month(self):
        assert current_month(datetime(2026, 3, 31, 23, 59)) == date(2026, 3, 1)


class TestCapture:

    def test_no_referral_is_noop(self, db):
        service = CommissionService(db)
        assert service.capture(SHOP, SUBSCRIPTION_UPDATE, subscription_payload()) is None
        assert db.execute(select(PartnerPayout)).scalars().all() == []

    def test_zero_amount_is_noop(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)

        service = CommissionService(db)
        assert service.capture(SHOP, SUBSCRIPTION_UPDATE, subscription_payload("0.00")) is None
        assert _payouts(db, agency.id) == []

    def test_inactive_referral_is_noop(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency, active=False)

        assert CommissionService(db).capture(SHOP, RECURRING_CHARGE_ACTIVATED, {"price": "9.99"}) is None
        assert _payouts(db, agency.id) == []

    @freeze_time("2026-05-14 10:00:00")
    def test_first_capture_creates_month_row(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)

        payout = CommissionService(db).capture(SHOP, SUBSCRIPTION_UPDATE, subscription_payload("29.99"))

        assert payout.month_for == date(2026, 5, 1)
        assert payout.gross_amount == Decimal("29.99")
        assert payout.commission_amount == Decimal("7.50")
        assert payout.paid is False

        referral = db.execute(select(MerchantReferral).where(MerchantReferral.shop_domain == SHOP)).scalar_one()
        assert referral.lifetime_revenue == Decimal("29.99")
        assert referral.last_billed_amount == Decimal("29.99")
        assert referral.last_billed_at == datetime(2026, 5, 14, 10, 0, 0)

    @freeze_time("2026-05-14 10:00:00")
    def test_captures_accumulate_in_same_month(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)
        make_referral("other.myshopify.com", agency)

        service = CommissionService(db)
        service.capture(SHOP, SUBSCRIPTION_UPDATE, subscription_payload("29.99"))
        service.capture("other.myshopify.com", RECURRING_CHARGE_ACTIVATED, {"price": "9.99"})

        rows = _payouts(db, agency.id)
        assert len(rows) == 1
        assert rows[0].gross_amount == Decimal("39.98")
        assert rows[0].commission_amount == Decimal("10.00")

    def test_month_boundary_opens_new_row(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)
        service = CommissionService(db)

        with freeze_time("2026-01-31 23:59:59"):
            service.capture(SHOP, RECURRING_CHARGE_ACTIVATED, {"price": "100"})
        with freeze_time("2026-02-01 00:00:01"):
            service.capture(SHOP, RECURRING_CHARGE_ACTIVATED, {"price": "100"})

        rows = _payouts(db, agency.id)
        assert [r.month_for for r in rows] == [date(2026, 1, 1), date(2026, 2, 1)]
        assert all(r.commission_amount == Decimal("25.00") for r in rows)

    def test_domain_is_normalized(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)

        payout = CommissionService(db).capture("https://DEMO.myshopify.com/", RECURRING_CHARGE_ACTIVATED,
                                               {"price": "10"})
        assert payout is not None
        assert payout.agency_id == agency.id

    @freeze_time("2026-05-14 10:00:00")
    def test_paid_row_is_never_modified(self, db, make_agency, make_referral):
        agency = make_agency()
        make_referral(SHOP, agency)
        paid = PartnerPayout(agency_id=agency.id, month_for=date(2026, 5, 1), gross_amount=Decimal("100.00"),
                             commission_amount=Decimal("25.00"), commission_rate=Decimal("0.25"),
                             paid=True, payment_reference="PAY-1")
        db.add(paid)
        db.commit()

        payout = CommissionService(db).capture(SHOP, RECURRING_CHARGE_ACTIVATED, {"price": "40"})

        assert payout.month_for == date(2026, 6, 1)
        rows = _payouts(db, agency.id)
        assert rows[0].paid is True
        assert rows[0].gross_amount == Decimal("100.00")
        assert rows[0].commission_amount == Decimal("25.00")
        assert rows[1].paid is False
        assert rows[1].commission_amount == Decimal("10.00")

    @freeze_time("2026-05-14 10:00:00")
    def test_row_inserted_by_concurrent_capture_is_reused(self, db, make_agency, make_referral):
        agency = make_agency()
        referral = make_referral(SHOP, agency)
        db.add(PartnerPayout(agency_id=agency.id, month_for=date(2026, 5, 1), gross_amount=Decimal("40.00"),
                             commission_amount=Decimal("10.00"), commission_rate=Decimal("0.25"), paid=False))
        db.commit()

        real_execute = db.execute
        lookups = []

        def stale_first_lookup(statement, *args, **kwargs):
            lookups.append(statement)
            if len(lookups) == 1:
                return MagicMock(**{"scalar_one_or_none.return_value": None})
            return real_execute(statement, *args, **kwargs)

        with patch.object(db, "execute", side_effect=stale_first_lookup):
            payout = CommissionService(db).record_billing(referral, Decimal("20.00"))

        assert payout.month_for == date(2026, 5, 1)
        rows = _payouts(db, agency.id)
        assert len(rows) == 1
        assert rows[0].gross_amount == Decimal("60.00")
        assert rows[0].commission_amount == Decimal("15.00")
        assert db.get(MerchantReferral, referral.id).lifetime_revenue == Decimal("20.00")
