import json
import logging
from typing import Any, Dict

import requests
from fastapi import APIRouter, HTTPException, Request, status, Depends
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..models.schemas import AnalyticsEventRequest, PlanOut, UpgradePlanRequest, WidgetSettingsRequest
from ..services.exceptions import ShopifyAPIError, UpstreamUnavailable
from ..services.shops import ShopService
from ..services.subscriptions import SubscriptionService
from ..services.upstream import UpstreamClient, chat_fallback, recommendations_fallback
from ..services.usage import UsageService
from ..services.widget import AnalyticsService, WidgetService
from ..utils.helpers import is_valid_shop_domain, normalize_shop_domain
from .dependencies import (
    get_analytics_service, get_shop_service, get_subscription_service, get_upstream_client,
    get_usage_service, get_widget_service, require_api_key
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _require_shop(shop: str) -> str:
    shop_domain = normalize_shop_domain(shop)
    if not shop_domain:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="shop parameter is required"
        )
    return shop_domain


def _json_body(body: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(body) if body else {}
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


@router.post("/api/chat")
async def chat(
        request: Request,
        usage: UsageService = Depends(get_usage_service),
        upstream: UpstreamClient = Depends(get_upstream_client)
):
    """
    Forward a widget chat message to the AI backend

    **Body:** the widget's JSON, passed through untouched. ``shop`` is required;
    ``session_id`` and ``customer_id`` are used for usage tracking.

    **Returns:**
    - The AI backend's answer, or a fallback apology when it is unreachable
    - 429 with the limit details once the shop's conversation limit is hit
    """
    body = await request.body()
    data = _json_body(body)
    shop_domain = _require_shop(data.get("shop") or data.get("shop_domain") or request.query_params.get("shop"))
    session_id = data.get("session_id") or data.get("sessionId")

    try:
        limit = usage.check_conversation_limit(shop_domain)
        if not limit["allowed"]:
            logger.info(f"Conversation limit reached for {shop_domain}: {limit['reason']}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "error": "Conversation limit reached",
                    "message": limit["reason"],
                    "limit_info": limit
                }
            )

        if session_id:
            is_new = usage.is_new_conversation(shop_domain, session_id)
            usage.record_conversation(shop_domain, session_id, data.get("customer_id"))
            if is_new and not limit["is_trial"]:
                usage.increment_message_usage(shop_domain)
    except Exception as e:
        # Usage bookkeeping never blocks a chat reply
        logger.error(f"Usage tracking failed for {shop_domain}: {e}")

    try:
        status_code, result = await run_in_threadpool(upstream.chat, body, request.headers.get("content-type"))
    except UpstreamUnavailable as e:
        logger.error(f"Chat proxy error for {shop_domain}: {e}")
        return chat_fallback()

    return JSONResponse(status_code=status_code, content=result)


@router.post("/api/recommendations")
async def recommendations(
        request: Request,
        upstream: UpstreamClient = Depends(get_upstream_client)
):
    body = await request.body()
    try:
        status_code, result = await run_in_threadpool(
            upstream.recommendations, body, request.headers.get("content-type")
        )
    except UpstreamUnavailable as e:
        logger.error(f"Recommendations proxy error: {e}")
        return recommendations_fallback()

    return JSONResponse(status_code=status_code, content=result)


@router.get("/api/conversation-limit")
async def conversation_limit(
        shop: str = None,
        usage: UsageService = Depends(get_usage_service)
):
    """Current conversation allowance for a shop"""
    shop_domain = _require_shop(shop)
    try:
        return {"success": True, "shop": shop_domain, "limit_info": usage.check_conversation_limit(shop_domain)}
    except Exception as e:
        logger.error(f"Error checking conversation limit for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to check conversation limit"
        )


@router.get("/api/pricing-plans")
async def pricing_plans(subscriptions: SubscriptionService = Depends(get_subscription_service)):
    try:
        plans = [PlanOut.model_validate(plan).model_dump() for plan in subscriptions.list_plans()]
        return {"success": True, "plans": plans}
    except Exception as e:
        logger.error(f"Error fetching plans: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch pricing plans"
        )


@router.get("/api/subscription-status")
async def subscription_status(
        shop: str = None,
        subscriptions: SubscriptionService = Depends(get_subscription_service)
):
    shop_domain = _require_shop(shop)
    try:
        return {"success": True, "shop": shop_domain, **subscriptions.status(shop_domain)}
    except Exception as e:
        logger.error(f"Error fetching subscription status for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch subscription status"
        )


@router.post("/api/upgrade-plan", dependencies=[Depends(require_api_key)])
async def upgrade_plan(
        request: UpgradePlanRequest,
        shops: ShopService = Depends(get_shop_service),
        subscriptions: SubscriptionService = Depends(get_subscription_service)
):
    """
    Create a Shopify app subscription for a plan

    **Returns:**
    - confirmation_url: where the merchant approves the charge

    **Error Codes:**
    - 400: Unknown plan
    - 404: Shop not installed
    - 502: Shopify rejected the charge
    """
    shop_domain = normalize_shop_domain(request.shop)
    if not is_valid_shop_domain(shop_domain):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid shop domain")

    access_token = shops.access_token(shop_domain)
    if not access_token:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shop not installed")

    try:
        result = await run_in_threadpool(subscriptions.start_upgrade, shop_domain, access_token, request.plan_name)
        return {"success": True, **result}

    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (ShopifyAPIError, requests.exceptions.RequestException) as e:
        logger.error(f"Upgrade to {request.plan_name} failed for {shop_domain}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Shopify billing request failed")


@router.get("/api/widget-config")
async def widget_config(
        shop: str = None,
        widgets: WidgetService = Depends(get_widget_service)
):
    """Public widget settings, stored values over defaults"""
    shop_domain = _require_shop(shop)
    try:
        return {"success": True, "shop": shop_domain, "settings": widgets.get_settings(shop_domain)}
    except Exception as e:
        logger.error(f"Error loading widget config for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load widget configuration"
        )


@router.post("/api/widget-settings", dependencies=[Depends(require_api_key)])
async def update_widget_settings(
        request: WidgetSettingsRequest,
        widgets: WidgetService = Depends(get_widget_service)
):
    shop_domain = _require_shop(request.shop)
    try:
        return {"success": True, "settings": widgets.update_settings(shop_domain, request.settings)}
    except Exception as e:
        logger.error(f"Error saving widget settings for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save widget settings"
        )


@router.post("/api/analytics-event")
async def analytics_event(
        request: AnalyticsEventRequest,
        analytics: AnalyticsService = Depends(get_analytics_service)
):
    shop_domain = _require_shop(request.shop)
    try:
        event = analytics.record_event(shop_domain, request.event_type, request.session_id, request.payload)
        return {"success": True, "event_id": event.id}
    except Exception as e:
        logger.error(f"Error recording analytics event for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record analytics event"
        )


@router.get("/api/analytics", dependencies=[Depends(require_api_key)])
async def analytics_summary(
        shop: str = None,
        days: int = 30,
        analytics: AnalyticsService = Depends(get_analytics_service)
):
    """
    Event counts and conversation totals for a shop

    **Parameters:**
    - shop: Shop domain
    - days: Window size in days (default: 30)
    """
    shop_domain = _require_shop(shop)
    if days < 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="days must be positive")

    try:
        return {"success": True, "data": analytics.summary(shop_domain, days)}
    except Exception as e:
        logger.error(f"Error building analytics for {shop_domain}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load analytics"
        )
