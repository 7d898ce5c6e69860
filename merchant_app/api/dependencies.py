import asyncio
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import settings
from ..models.database import get_db
from ..services.agencies import AgencyService
from ..services.commission import CommissionService
from ..services.payouts import PayoutService
from ..services.referrals import ReferralService
from ..services.shopify_client import ShopifyClient
from ..services.shops import ShopService
from ..services.subscriptions import SubscriptionService
from ..services.upstream import UpstreamClient
from ..services.usage import UsageService
from ..services.widget import AnalyticsService, WidgetService
from ..utils.helpers import normalize_shop_domain
from ..utils.webhook_verify import (
    HMAC_HEADER, SHOP_HEADER, TOPIC_HEADER, is_exempt_uninstall, verify_webhook_hmac
)

logger = logging.getLogger(__name__)


# Dependency injection for services
def get_agency_service(db: Session = Depends(get_db)) -> AgencyService:
    return AgencyService(db)


def get_commission_service(db: Session = Depends(get_db)) -> CommissionService:
    return CommissionService(db)


def get_payout_service(db: Session = Depends(get_db)) -> PayoutService:
    return PayoutService(db)


def get_referral_service(db: Session = Depends(get_db)) -> ReferralService:
    return ReferralService(db)


def get_shop_service(db: Session = Depends(get_db)) -> ShopService:
    return ShopService(db)


def get_usage_service(db: Session = Depends(get_db)) -> UsageService:
    return UsageService(db)


def get_shopify_client() -> ShopifyClient:
    return ShopifyClient()


def get_subscription_service(db: Session = Depends(get_db),
                             shopify: ShopifyClient = Depends(get_shopify_client)) -> SubscriptionService:
    return SubscriptionService(db, shopify)


def get_widget_service(db: Session = Depends(get_db)) -> WidgetService:
    return WidgetService(db)


def get_analytics_service(db: Session = Depends(get_db)) -> AnalyticsService:
    return AnalyticsService(db)


def get_upstream_client() -> UpstreamClient:
    return UpstreamClient()


def require_api_key(x_api_key: Optional[str] = Header(default=None)):
    """Admin routes are open until API_KEY is configured"""
    if not settings.API_KEY:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key.encode("utf-8"), settings.API_KEY.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )


@dataclass
class WebhookContext:
    topic: str
    shop_domain: str
    payload: Dict[str, Any] = field(default_factory=dict)
    body: bytes = b""


def _parse_payload(body: bytes) -> Dict[str, Any]:
    if not body.strip():
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return {}
    return payload if isinstance(payload, dict) else {}


async def _authenticate(request: Request, allow_empty_uninstall: bool = False) -> WebhookContext:
    body = await request.body()
    topic = (request.headers.get(TOPIC_HEADER) or "").lower()

    if allow_empty_uninstall and is_exempt_uninstall(topic, body):
        logger.info("Accepting empty app/uninstalled webhook without HMAC")
    elif not verify_webhook_hmac(body, request.headers.get(HMAC_HEADER),
                                 [settings.SHOPIFY_WEBHOOK_SECRET, settings.SHOPIFY_API_SECRET]):
        logger.warning(f"Webhook HMAC verification failed for topic {topic or 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="HMAC verification failed"
        )

    payload = _parse_payload(body)
    shop_domain = normalize_shop_domain(
        request.headers.get(SHOP_HEADER)
        or payload.get("shop_domain")
        or payload.get("myshopify_domain")
        or payload.get("domain")
    )
    return WebhookContext(topic=topic, shop_domain=shop_domain, payload=payload, body=body)


async def _verify_within_timeout(request: Request, allow_empty_uninstall: bool) -> WebhookContext:
    try:
        context = await asyncio.wait_for(_authenticate(request, allow_empty_uninstall=allow_empty_uninstall),
                                         timeout=settings.WEBHOOK_AUTH_TIMEOUT)
    except asyncio.TimeoutError:
        logger.error(f"Webhook authentication timed out after {settings.WEBHOOK_AUTH_TIMEOUT}s")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook authentication timed out"
        )

    logger.info(f"Webhook {context.topic or 'unknown'} received for {context.shop_domain or 'unknown shop'}")
    return context


async def verified_webhook(request: Request) -> WebhookContext:
    """
    Authenticate a Shopify webhook from its raw body

    Raises:
        HTTPException: 401 on a bad signature or when authentication does not
        finish within WEBHOOK_AUTH_TIMEOUT seconds
    """
    return await _verify_within_timeout(request, allow_empty_uninstall=False)


async def verified_uninstall_webhook(request: Request) -> WebhookContext:
    """Same as verified_webhook, but an empty app/uninstalled body may arrive unsigned"""
    return await _verify_within_timeout(request, allow_empty_uninstall=True)
