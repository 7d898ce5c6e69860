"""Tests for the payout export, threshold rollover and settlement."""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from merchant_app.models.database import PartnerPayout
from merchant_app.services.payouts import CSV_HEADERS, PayoutService, to_csv


def _row(db, agency, month, commission, paid=False):
    commission = Decimal(commission)
    payout = PartnerPayout(
        agency_id=agency.id,
        month_for=month,
        gross_amount=commission * 4,
        commission_amount=commission,
        commission_rate=Decimal("0.25"),
        paid=paid,
    )
    db.add(payout)
    db.commit()
    db.refresh(payout)
    return payout


class TestThreshold:
    """An agency is exported iff its pending commission reaches its threshold."""

    def test_below_threshold_excluded(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "24.99")

        summary = PayoutService(db).unpaid_summary()
        assert summary["payouts"] == []
        assert summary["below_threshold"] == 1
        assert summary["total_to_pay"] == Decimal("0.00")

    def test_exactly_threshold_included(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "25.00")

        summary = PayoutService(db).unpaid_summary()
        assert summary["agency_count"] == 1
        assert summary["payouts"][0]["Commission (25%)"] == "25.00"

    def test_balance_rolls_over_until_threshold(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "10.00")
        service = PayoutService(db)
        assert service.unpaid_summary()["agency_count"] == 0

        _row(db, agency, date(2026, 2, 1), "10.00")
        assert service.unpaid_summary()["agency_count"] == 0

        _row(db, agency, date(2026, 3, 1), "7.50")
        summary = service.unpaid_summary()
        assert summary["agency_count"] == 1
        row = summary["payouts"][0]
        assert row["Commission (25%)"] == "27.50"
        assert row["Months Included"] == "2026-03; 2026-02; 2026-01"
        assert len(row["Payout IDs"]) == 3

    def test_custom_threshold(self, db, make_agency):
        agency = make_agency(threshold="100.00")
        _row(db, agency, date(2026, 1, 1), "60.00")
        assert PayoutService(db).unpaid_summary()["agency_count"] == 0

    def test_paid_rows_ignored(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "50.00", paid=True)
        summary = PayoutService(db).unpaid_summary()
        assert summary["agency_count"] == 0
        assert summary["below_threshold"] == 0


class TestGenerateCsv:

    def test_nothing_to_export(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "5.00")

        result = PayoutService(db).generate_csv()
        assert result["success"] is False
        assert "1 agencies below threshold" in result["message"]

    def test_csv_content(self, db, make_agency):
        agency = make_agency(name="Acme, Inc", payment_method="paypal")
        low = make_agency(name="Small Shop Co")
        first = _row(db, agency, date(2026, 1, 1), "20.00")
        second = _row(db, agency, date(2026, 2, 1), "12.50")
        _row(db, low, date(2026, 2, 1), "3.00")

        result = PayoutService(db).generate_csv()

        assert result["success"] is True
        assert result["count"] == 1
        assert result["total_amount"] == "32.50"
        assert result["below_threshold"] == 1
        assert result["metadata"] == [
            {"agency_id": agency.id, "payout_ids": [second.id, first.id], "amount": "32.50"}
        ]

        lines = result["csv"].split("\n")
        assert lines[0] == ",".join(CSV_HEADERS)
        assert lines[1] == (
            f'"Acme, Inc",{agency.email},paypal,{agency.email},2026-02; 2026-01,130.00,32.50,'
        )
        assert len(lines) == 2

    def test_payment_method_default(self, db, make_agency):
        agency = make_agency(payment_email="payments@example.com")
        _row(db, agency, date(2026, 1, 1), "30.00")

        row = PayoutService(db).unpaid_summary()["payouts"][0]
        assert row["Payment Method"] == "Not Set"
        assert row["Payment Email"] == "payments@example.com"

    def test_to_csv_blank_for_none(self):
        assert to_csv([{"a": None, "b": 1}], ["a", "b"]) == "a,b\n,1"


class TestMarkPaid:

    def test_marks_rows_once(self, db, make_agency):
        agency = make_agency()
        first = _row(db, agency, date(2026, 1, 1), "20.00")
        second = _row(db, agency, date(2026, 2, 1), "10.00")
        service = PayoutService(db)

        assert service.mark_paid([first.id, second.id], "PAY-001", "paypal") == 2
        assert service.mark_paid([first.id, second.id], "PAY-002") == 0

        db.expire_all()
        rows = db.execute(select(PartnerPayout).order_by(PartnerPayout.id)).scalars().all()
        assert all(r.paid for r in rows)
        assert {r.payment_reference for r in rows} == {"PAY-001"}
        assert {r.payment_method for r in rows} == {"paypal"}
        assert all(r.paid_at is not None for r in rows)

    def test_threshold_not_rechecked(self, db, make_agency):
        agency = make_agency()
        row = _row(db, agency, date(2026, 1, 1), "1.00")
        assert PayoutService(db).mark_paid([row.id], "MANUAL-1") == 1

    def test_empty_ids(self, db):
        assert PayoutService(db).mark_paid([], "PAY-001") == 0

    def test_paid_rows_leave_export(self, db, make_agency):
        agency = make_agency()
        row = _row(db, agency, date(2026, 1, 1), "40.00")
        service = PayoutService(db)
        service.mark_paid([row.id], "PAY-001")

        assert service.generate_csv()["success"] is False


class TestReports:

    def test_agency_details(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "10.00")
        _row(db, agency, date(2026, 2, 1), "5.00")

        details = PayoutService(db).agency_details(agency.id)
        assert details["agency"]["id"] == agency.id
        assert [p["month"] for p in details["payouts"]] == ["2026-02", "2026-01"]
        assert details["total_commission"] == Decimal("15.00")
        assert details["meets_threshold"] is False

    def test_agency_details_unknown_agency(self, db):
        assert PayoutService(db).agency_details(999)["agency"] is None

    def test_below_threshold_listing(self, db, make_agency):
        agency = make_agency()
        _row(db, agency, date(2026, 1, 1), "10.00")
        _row(db, agency, date(2026, 2, 1), "5.00")

        below = PayoutService(db).agencies_below_threshold()
        assert below == [{
            "agency_id": agency.id,
            "name": agency.name,
            "email": agency.email,
            "current_balance": "15.00",
            "threshold": "25.00",
            "months_pending": 2,
            "amount_needed": "10.00",
        }]

    def test_report_totals(self, db, make_agency):
        ready = make_agency()
        waiting = make_agency()
        _row(db, ready, date(2026, 1, 1), "30.00")
        _row(db, ready, date(2025, 12, 1), "25.00", paid=True)
        _row(db, waiting, date(2026, 1, 1), "5.00")

        report = PayoutService(db).report()
        assert report["ready_to_pay"]["agencies"] == 1
        assert report["ready_to_pay"]["total_amount"] == 30.0
        assert report["below_threshold"]["count"] == 1
        assert report["all_time"] == {
            "total_gross": 240.0,
            "total_commission": 60.0,
            "total_payouts": 3,
            "paid_out": 25.0,
        }
