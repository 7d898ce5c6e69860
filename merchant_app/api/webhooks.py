import logging

from fastapi import APIRouter, Depends

from ..services.commission import (
    BILLING_TOPICS, ONE_TIME_PURCHASE_UPDATE, RECURRING_CHARGE_ACTIVATED, SUBSCRIPTION_UPDATE,
    CommissionService
)
from ..services.shops import ShopService
from ..services.subscriptions import SubscriptionService
from .dependencies import (
    WebhookContext, get_commission_service, get_shop_service, get_subscription_service, verified_uninstall_webhook,
    verified_webhook
)

logger = logging.getLogger(__name__)
router = APIRouter()

# Handlers answer 200 once the signature checks out, even when processing fails.


def _capture_commission(commission: CommissionService, context: WebhookContext, topic: str) -> dict:
    if not context.shop_domain:
        logger.warning(f"{topic} webhook without shop domain, skipping commission")
        return {"success": True, "captured": False}

    try:
        payout = commission.capture(context.shop_domain, topic, context.payload)
    except Exception as e:
        logger.error(f"Partner billing webhook error for {context.shop_domain}: {e}")
        return {"success": False, "error": "Commission capture failed"}

    return {
        "success": True,
        "captured": payout is not None,
        "payout_id": payout.id if payout else None,
    }


@router.post("/webhooks/app/uninstalled")
async def app_uninstalled(
        context: WebhookContext = Depends(verified_uninstall_webhook),
        shops: ShopService = Depends(get_shop_service)
):
    """
    Clean up after the app is removed from a shop

    Sessions are deleted, the access token is dropped and the shop and its
    partner referral are deactivated.
    """
    if not context.shop_domain:
        logger.warning("app/uninstalled webhook without shop domain")
        return {"success": True, "cleaned": False}

    try:
        summary = shops.handle_uninstall(context.shop_domain)
    except Exception as e:
        logger.error(f"Error cleaning up uninstalled shop {context.shop_domain}: {e}")
        return {"success": False, "error": "Cleanup failed"}

    return {"success": True, "cleaned": True, "summary": summary}


@router.post("/webhooks/app_subscriptions/update")
async def app_subscriptions_update(
        context: WebhookContext = Depends(verified_webhook),
        subscriptions: SubscriptionService = Depends(get_subscription_service),
        commission: CommissionService = Depends(get_commission_service)
):
    """Mirror the subscription locally, then credit the referring agency"""
    synced = None
    if context.shop_domain:
        try:
            subscription = subscriptions.sync_from_webhook(context.shop_domain, context.payload)
            synced = subscription.status if subscription else None
        except Exception as e:
            logger.error(f"Error syncing subscription for {context.shop_domain}: {e}")

    result = _capture_commission(commission, context, SUBSCRIPTION_UPDATE)
    result["subscription_status"] = synced
    return result


@router.post("/webhooks/app_subscriptions/approaching_capped_amount")
async def approaching_capped_amount(context: WebhookContext = Depends(verified_webhook)):
    subscription = context.payload.get("app_subscription") or {}
    logger.warning(
        f"Shop {context.shop_domain} is approaching its capped amount "
        f"(balance used: {subscription.get('balance_used')}, capped: {subscription.get('capped_amount')})"
    )
    return {"success": True}


@router.post("/webhooks/app_purchases_one_time/update")
async def one_time_purchase_update(
        context: WebhookContext = Depends(verified_webhook),
        commission: CommissionService = Depends(get_commission_service)
):
    return _capture_commission(commission, context, ONE_TIME_PURCHASE_UPDATE)


@router.post("/webhooks/recurring_application_charges/activated")
async def recurring_charge_activated(
        context: WebhookContext = Depends(verified_webhook),
        commission: CommissionService = Depends(get_commission_service)
):
    return _capture_commission(commission, context, RECURRING_CHARGE_ACTIVATED)


@router.post("/api/partner-billing")
async def partner_billing(
        context: WebhookContext = Depends(verified_webhook),
        commission: CommissionService = Depends(get_commission_service)
):
    """
    Single endpoint for every billing topic, dispatched on X-Shopify-Topic

    Topics outside the billing set are acknowledged and ignored.
    """
    if context.topic not in BILLING_TOPICS:
        logger.info(f"Ignoring non-billing topic on partner billing endpoint: {context.topic}")
        return {"success": True, "ignored": True}

    return _capture_commission(commission, context, context.topic)


@router.post("/webhooks/customers/data_request")
async def customers_data_request(
        context: WebhookContext = Depends(verified_webhook),
        shops: ShopService = Depends(get_shop_service)
):
    customer = context.payload.get("customer") or {}
    try:
        data = shops.customer_data(context.shop_domain, customer.get("id"))
    except Exception as e:
        logger.error(f"Error collecting customer data for {context.shop_domain}: {e}")
        return {"success": False, "error": "Data request failed"}

    logger.info(f"Customer data request for {context.shop_domain}: "
                f"{len(data['conversations'])} conversations on record")
    return {"success": True, "data": data}


@router.post("/webhooks/customers/redact")
async def customers_redact(
        context: WebhookContext = Depends(verified_webhook),
        shops: ShopService = Depends(get_shop_service)
):
    customer = context.payload.get("customer") or {}
    try:
        deleted = shops.redact_customer(context.shop_domain, customer.get("id"))
    except Exception as e:
        logger.error(f"Error redacting customer for {context.shop_domain}: {e}")
        return {"success": False, "error": "Customer redaction failed"}

    return {"success": True, "deleted": {"conversations": deleted}}


@router.post("/webhooks/shop/redact")
async def shop_redact(
        context: WebhookContext = Depends(verified_webhook),
        shops: ShopService = Depends(get_shop_service)
):
    """Erase a shop's data 48 hours after uninstall"""
    if not context.shop_domain:
        logger.warning("shop/redact webhook without shop domain")
        return {"success": True, "deleted": {}}

    try:
        summary = shops.redact_shop(context.shop_domain)
    except Exception as e:
        logger.error(f"Error redacting shop {context.shop_domain}: {e}")
        return {"success": False, "error": "Shop redaction failed"}

    return {"success": True, "deleted": summary}
