import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Response, status

from ..models.schemas import (
    AgencyCreate, AgencyOut, AgencyUpdate, LinkMerchantRequest, MarkPaidRequest,
    MerchantReferralOut, PartnerPayoutOut
)
from ..services.agencies import AgencyService
from ..services.exceptions import AgencyNotFound, DuplicateAgency, ReferralConflict
from ..services.payouts import PayoutService
from .dependencies import get_agency_service, get_payout_service, require_api_key

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(require_api_key)])


def _agency_json(agency) -> dict:
    return AgencyOut.model_validate(agency).model_dump()


@router.get("/api/partner-agencies")
async def list_agencies(
        include_stats: bool = False,
        agencies: AgencyService = Depends(get_agency_service)
):
    """
    List partner agencies, newest first

    **Parameters:**
    - include_stats: Add merchant and payout row counts per agency
    """
    try:
        items = agencies.list_agencies(include_stats)
        data = []
        for item in items:
            entry = _agency_json(item["agency"])
            if include_stats:
                entry["_count"] = item["counts"]
            data.append(entry)

        return {"agencies": data, "count": len(data)}

    except Exception as e:
        logger.error(f"Error fetching agencies: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch agencies"
        )


@router.post("/api/partner-agencies", status_code=status.HTTP_201_CREATED)
async def create_agency(
        request: AgencyCreate,
        agencies: AgencyService = Depends(get_agency_service)
):
    """
    Register a partner agency and issue its referral code

    **Error Codes:**
    - 409: Email or referral code already exists
    """
    try:
        agency = agencies.create(
            name=request.name.strip(),
            email=request.email.strip().lower(),
            payment_method=request.payment_method,
            payment_email=request.payment_email,
            minimum_payout_threshold=request.minimum_payout_threshold
        )
        return {"success": True, "agency": _agency_json(agency)}

    except DuplicateAgency as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating agency: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create agency"
        )


@router.post("/api/partner-agencies/link-merchant")
async def link_merchant(
        request: LinkMerchantRequest,
        agencies: AgencyService = Depends(get_agency_service)
):
    """
    Attribute a shop to an agency by hand

    A shop linked to another agency is only moved with ``reassign=true``.
    """
    try:
        referral = agencies.link_merchant(request.shop_domain, request.agency_id, request.reassign)
        return {"success": True, "referral": MerchantReferralOut.model_validate(referral).model_dump()}

    except AgencyNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ReferralConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Error linking merchant {request.shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to link merchant"
        )


@router.get("/api/partner-agencies/{agency_id}")
async def get_agency(
        agency_id: int,
        agencies: AgencyService = Depends(get_agency_service)
):
    """Agency with its active merchants, recent ledger rows and balance"""
    try:
        result = agencies.get_with_stats(agency_id)
        agency = _agency_json(result["agency"])
        agency["merchant_referrals"] = [
            MerchantReferralOut.model_validate(m).model_dump() for m in result["merchants"]
        ]
        agency["partner_payouts"] = [
            PartnerPayoutOut.model_validate(p).model_dump() for p in result["payouts"]
        ]
        stats = {key: float(value) if key != "total_merchants" else value
                 for key, value in result["stats"].items()}

        return {"agency": agency, "stats": stats}

    except AgencyNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")
    except Exception as e:
        logger.error(f"Error fetching agency {agency_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch agency"
        )


@router.patch("/api/partner-agencies/{agency_id}")
async def update_agency(
        agency_id: int,
        request: AgencyUpdate,
        agencies: AgencyService = Depends(get_agency_service)
):
    try:
        agency = agencies.update(agency_id, request.model_dump(exclude_unset=True))
        return {"success": True, "agency": _agency_json(agency)}

    except AgencyNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")
    except DuplicateAgency as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating agency {agency_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update agency"
        )


@router.get("/api/partner-payouts")
async def payout_report(payouts: PayoutService = Depends(get_payout_service)):
    """Ready-to-pay, below-threshold and all-time payout totals"""
    try:
        return payouts.report()
    except Exception as e:
        logger.error(f"Error building payout report: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request"
        )


@router.get("/api/partner-payouts/export-csv")
async def export_payouts_csv(payouts: PayoutService = Depends(get_payout_service)):
    """
    Download the payout CSV for agencies at or above their threshold

    **Error Codes:**
    - 404: No agency meets its payout threshold
    """
    try:
        result = payouts.generate_csv()
    except Exception as e:
        logger.error(f"Error generating payout CSV: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request"
        )

    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result["message"])

    filename = f"partner-payouts-{date.today().isoformat()}.csv"
    return Response(
        content=result["csv"],
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={filename}",
            "X-Payout-Count": str(result["count"]),
            "X-Payout-Total": result["total_amount"],
        }
    )


@router.get("/api/partner-payouts/below-threshold")
async def below_threshold(payouts: PayoutService = Depends(get_payout_service)):
    try:
        return {"agencies": payouts.agencies_below_threshold()}
    except Exception as e:
        logger.error(f"Error listing agencies below threshold: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request"
        )


@router.get("/api/partner-payouts/agency/{agency_id}")
async def agency_payout_details(
        agency_id: int,
        payouts: PayoutService = Depends(get_payout_service)
):
    try:
        details = payouts.agency_details(agency_id)
    except Exception as e:
        logger.error(f"Error fetching payout details for agency {agency_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request"
        )

    if details["agency"] is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")
    return details


@router.post("/api/partner-payouts/mark-paid")
async def mark_payouts_paid(
        request: MarkPaidRequest,
        payouts: PayoutService = Depends(get_payout_service)
):
    """
    Record a completed payout run

    Rows that are already paid are left as they are; ``updated`` counts only
    rows this call settled.
    """
    try:
        updated = payouts.mark_paid(request.payout_ids, request.payment_reference.strip(),
                                    request.payment_method)
        return {
            "success": True,
            "updated": updated,
            "message": f"Marked {updated} payouts as paid"
        }

    except Exception as e:
        logger.error(f"Payout action error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process action"
        )
