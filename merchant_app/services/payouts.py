import csv
import io
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..models.database import Agency, PartnerPayout
from ..utils.helpers import format_money, quantize_money, utcnow

logger = logging.getLogger(__name__)

CSV_HEADERS = [
    "Partner Name",
    "Email",
    "Payment Method",
    "Payment Email",
    "Months Included",
    "Gross Revenue",
    "Commission (25%)",
    "Payment Reference",
]


def _threshold(agency: Agency) -> Decimal:
    if agency.minimum_payout_threshold is None:
        return settings.DEFAULT_PAYOUT_THRESHOLD
    return Decimal(agency.minimum_payout_threshold)


def to_csv(rows: List[Dict[str, Any]], headers: List[str]) -> str:
    """Render rows as CSV, quoting only where needed"""
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=headers, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({key: "" if row.get(key) is None else row.get(key) for key in headers})
    return buffer.getvalue().rstrip("\n")


class PayoutService:
    """Partner payout ledger queries, CSV export and settlement"""

    def __init__(self, db: Session):
        self.db = db

    def _unpaid_by_agency(self, agency_id: Optional[int] = None) -> "OrderedDict[int, Dict[str, Any]]":
        query = (
            select(PartnerPayout)
            .options(joinedload(PartnerPayout.agency))
            .where(PartnerPayout.paid.is_(False))
            .order_by(PartnerPayout.agency_id.asc(), PartnerPayout.month_for.desc())
        )
        if agency_id is not None:
            query = query.where(PartnerPayout.agency_id == agency_id)

        grouped: "OrderedDict[int, Dict[str, Any]]" = OrderedDict()
        for payout in self.db.execute(query).scalars():
            summary = grouped.setdefault(payout.agency_id, {
                "agency": payout.agency,
                "total_commission": Decimal("0"),
                "total_gross": Decimal("0"),
                "months": [],
                "payout_ids": [],
            })
            summary["total_commission"] += Decimal(payout.commission_amount or 0)
            summary["total_gross"] += Decimal(payout.gross_amount or 0)
            summary["months"].append(payout.month_for.strftime("%Y-%m"))
            summary["payout_ids"].append(payout.id)

        return grouped

    def unpaid_summary(self) -> Dict[str, Any]:
        """
        Group every unpaid ledger row by agency and apply payout thresholds

        Agencies whose pending commission is below their threshold are left
        out; their rows stay unpaid and count toward a later export.

        Returns:
            dict: payouts (export rows), total_to_pay, agency_count, below_threshold
        """
        grouped = self._unpaid_by_agency()

        payouts = []
        below_threshold = 0
        for summary in grouped.values():
            agency = summary["agency"]
            if summary["total_commission"] < _threshold(agency):
                below_threshold += 1
                continue

            payouts.append({
                "Partner Name": agency.name,
                "Email": agency.email,
                "Payment Method": agency.payment_method or "Not Set",
                "Payment Email": agency.payment_email or agency.email,
                "Months Included": "; ".join(summary["months"]),
                "Gross Revenue": format_money(summary["total_gross"]),
                "Commission (25%)": format_money(summary["total_commission"]),
                "Payment Reference": "",
                "Agency ID": agency.id,
                "Payout IDs": summary["payout_ids"],
            })

        total_to_pay = sum((Decimal(p["Commission (25%)"]) for p in payouts), Decimal("0"))
        return {
            "payouts": payouts,
            "total_to_pay": quantize_money(total_to_pay),
            "agency_count": len(payouts),
            "below_threshold": below_threshold,
        }

    def generate_csv(self) -> Dict[str, Any]:
        """
        Build the payout CSV for agencies that meet their threshold

        Returns:
            dict: success flag; on success csv text, count, total_amount and
            per-agency metadata (payout ids to mark paid afterwards)
        """
        summary = self.unpaid_summary()

        if not summary["payouts"]:
            return {
                "success": False,
                "message": (f"No payouts meeting minimum threshold. "
                            f"{summary['below_threshold']} agencies below threshold."),
                "below_threshold": summary["below_threshold"],
            }

        csv_text = to_csv(summary["payouts"], CSV_HEADERS)
        logger.info(f"Generated payout CSV for {summary['agency_count']} agencies, total ${summary['total_to_pay']}")

        return {
            "success": True,
            "csv": csv_text,
            "count": summary["agency_count"],
            "total_amount": format_money(summary["total_to_pay"]),
            "below_threshold": summary["below_threshold"],
            "metadata": [
                {
                    "agency_id": p["Agency ID"],
                    "payout_ids": p["Payout IDs"],
                    "amount": p["Commission (25%)"],
                }
                for p in summary["payouts"]
            ],
        }

    def agency_details(self, agency_id: int) -> Dict[str, Any]:
        """Unpaid monthly breakdown for one agency"""
        agency = self.db.get(Agency, agency_id)
        summary = self._unpaid_by_agency(agency_id).get(agency_id)

        rows = []
        if summary:
            payouts = self.db.execute(
                select(PartnerPayout)
                .where(PartnerPayout.id.in_(summary["payout_ids"]))
                .order_by(PartnerPayout.month_for.desc())
            ).scalars().all()
            rows = [
                {
                    "id": p.id,
                    "month": p.month_for.strftime("%Y-%m"),
                    "gross_amount": float(p.gross_amount),
                    "commission_amount": float(p.commission_amount),
                }
                for p in payouts
            ]

        total = summary["total_commission"] if summary else Decimal("0")
        threshold = _threshold(agency) if agency else settings.DEFAULT_PAYOUT_THRESHOLD

        return {
            "agency": {"id": agency.id, "name": agency.name, "email": agency.email} if agency else None,
            "payouts": rows,
            "total_commission": quantize_money(total),
            "threshold": quantize_money(threshold),
            "meets_threshold": total >= threshold,
        }

    def agencies_below_threshold(self) -> List[Dict[str, Any]]:
        """Agencies with a pending balance that has not reached their threshold yet"""
        result = []
        for summary in self._unpaid_by_agency().values():
            agency = summary["agency"]
            threshold = _threshold(agency)
            if summary["total_commission"] >= threshold:
                continue
            result.append({
                "agency_id": agency.id,
                "name": agency.name,
                "email": agency.email,
                "current_balance": format_money(summary["total_commission"]),
                "threshold": format_money(threshold),
                "months_pending": len(summary["months"]),
                "amount_needed": format_money(threshold - summary["total_commission"]),
            })
        return result

    def report(self) -> Dict[str, Any]:
        """Ready-to-pay, below-threshold and all-time totals"""
        unpaid = self.unpaid_summary()
        below = self.agencies_below_threshold()

        totals = self.db.execute(
            select(
                func.coalesce(func.sum(PartnerPayout.gross_amount), 0),
                func.coalesce(func.sum(PartnerPayout.commission_amount), 0),
                func.count(PartnerPayout.id),
            )
        ).one()
        paid_out = self.db.execute(
            select(func.coalesce(func.sum(PartnerPayout.commission_amount), 0))
            .where(PartnerPayout.paid.is_(True))
        ).scalar_one()

        return {
            "ready_to_pay": {
                "agencies": unpaid["agency_count"],
                "total_amount": float(unpaid["total_to_pay"]),
                "payouts": unpaid["payouts"],
            },
            "below_threshold": {
                "count": len(below),
                "agencies": below,
            },
            "all_time": {
                "total_gross": float(totals[0] or 0),
                "total_commission": float(totals[1] or 0),
                "total_payouts": int(totals[2] or 0),
                "paid_out": float(paid_out or 0),
            },
        }

    def mark_paid(self, payout_ids: List[int], payment_reference: str,
                  payment_method: str = "manual") -> int:
        """
        Settle ledger rows

        Rows already paid are skipped, so each row is stamped exactly once.
        The payout threshold is not re-checked here.

        Args:
            payout_ids: Ledger row ids
            payment_reference: External payment reference
            payment_method: How the payout was made

        Returns:
            int: Number of rows newly marked paid
        """
        if not payout_ids:
            return 0

        try:
            result = self.db.execute(
                update(PartnerPayout)
                .where(PartnerPayout.id.in_(payout_ids), PartnerPayout.paid.is_(False))
                .values(
                    paid=True,
                    payment_reference=payment_reference,
                    payment_method=payment_method,
                    paid_at=utcnow(),
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error marking payouts as paid: {e}")
            raise

        logger.info(f"Marked {result.rowcount} payouts as paid with reference: {payment_reference}")
        return result.rowcount
