import hmac
import logging
import secrets
from typing import Optional
from urllib.parse import urlencode

import requests
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from ..config import settings, is_production
from ..services.exceptions import ShopifyAPIError
from ..services.referrals import ReferralService
from ..services.shopify_client import ShopifyClient
from ..services.shops import ShopService
from ..utils.helpers import is_valid_shop_domain, normalize_shop_domain
from ..utils.webhook_verify import verify_oauth_query_hmac
from .dependencies import get_referral_service, get_shop_service, get_shopify_client

logger = logging.getLogger(__name__)
router = APIRouter()

STATE_COOKIE = "shopify_oauth_state"
REFERRAL_COOKIE = "partner_ref"
COOKIE_MAX_AGE = 600


def _require_shop(shop: Optional[str]) -> str:
    shop_domain = normalize_shop_domain(shop)
    if not is_valid_shop_domain(shop_domain):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing or invalid shop parameter"
        )
    return shop_domain


def _check_query_hmac(request: Request):
    params = dict(request.query_params)
    if not verify_oauth_query_hmac(params, settings.SHOPIFY_API_SECRET):
        logger.warning(f"OAuth HMAC verification failed for {params.get('shop')}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="HMAC verification failed"
        )


@router.get("/install")
async def install_landing(
        request: Request,
        ref: Optional[str] = None,
        shop: Optional[str] = None,
        referrals: ReferralService = Depends(get_referral_service)
):
    """
    Partner install link: ``/install?ref=CODE&shop=store.myshopify.com``

    Without a shop the landing details are returned so a page can ask for the
    store domain. With a shop a valid referral is stashed and the merchant is
    sent on to OAuth.
    """
    if "hmac" in request.query_params:
        _check_query_hmac(request)

    info = referrals.landing_info(ref, settings.APP_NAME)
    if not shop:
        return info

    shop_domain = _require_shop(shop)
    if info["has_valid_referral"]:
        try:
            referrals.stash(shop_domain, ref)
        except Exception as e:
            logger.error(f"Failed to stash referral {ref} for {shop_domain}: {e}")

    query = {"shop": shop_domain}
    if info["has_valid_referral"]:
        query["ref"] = ref
    return RedirectResponse(f"/auth?{urlencode(query)}", status_code=status.HTTP_302_FOUND)


@router.get("/auth")
async def begin_oauth(
        shop: Optional[str] = None,
        ref: Optional[str] = None,
        referrals: ReferralService = Depends(get_referral_service),
        shopify: ShopifyClient = Depends(get_shopify_client)
):
    """Start the offline-token OAuth flow for a shop"""
    shop_domain = _require_shop(shop)

    if ref:
        try:
            referrals.stash(shop_domain, ref)
        except Exception as e:
            logger.error(f"Failed to stash referral {ref} for {shop_domain}: {e}")

    state = secrets.token_urlsafe(16)
    redirect_uri = f"{settings.APP_URL}/auth/callback"
    response = RedirectResponse(shopify.authorize_url(shop_domain, state, redirect_uri),
                                status_code=status.HTTP_302_FOUND)
    response.set_cookie(STATE_COOKIE, state, max_age=COOKIE_MAX_AGE, httponly=True,
                        secure=is_production(), samesite="lax")
    if ref:
        response.set_cookie(REFERRAL_COOKIE, ref, max_age=COOKIE_MAX_AGE, httponly=True,
                            secure=is_production(), samesite="lax")

    logger.info(f"Starting OAuth for {shop_domain}" + (f" with referral {ref}" if ref else ""))
    return response


@router.get("/auth/callback")
async def oauth_callback(
        request: Request,
        shop: Optional[str] = None,
        code: Optional[str] = None,
        state: Optional[str] = None,
        host: Optional[str] = None,
        shops: ShopService = Depends(get_shop_service),
        referrals: ReferralService = Depends(get_referral_service),
        shopify: ShopifyClient = Depends(get_shopify_client)
):
    """
    Finish OAuth: store the offline token and attribute the install

    Database failures after the token exchange are logged; the merchant is
    still sent into the app.
    """
    _check_query_hmac(request)
    shop_domain = _require_shop(shop)

    expected_state = request.cookies.get(STATE_COOKIE)
    if not state or not expected_state or not hmac.compare_digest(state, expected_state):
        logger.warning(f"OAuth state mismatch for {shop_domain}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid OAuth state")

    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code")

    try:
        token = shopify.exchange_code(shop_domain, code)
    except (ShopifyAPIError, requests.exceptions.RequestException) as e:
        logger.error(f"OAuth token exchange failed for {shop_domain}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Token exchange with Shopify failed")

    logger.info(f"Auth callback successful for shop: {shop_domain}")

    try:
        shops.save_installation(shop_domain, token["access_token"], token.get("scope"))
    except Exception as e:
        logger.error(f"Database error during auth callback for {shop_domain}: {e}")

    try:
        referral = referrals.attribute(shop_domain, request.cookies.get(REFERRAL_COOKIE))
        if referral:
            logger.info(f"{shop_domain} attributed to agency {referral.agency_id}")
    except Exception as e:
        logger.error(f"Failed to process referral for {shop_domain}: {e}")

    query = {"shop": shop_domain}
    if host:
        query["host"] = host
    response = RedirectResponse(f"/app?{urlencode(query)}", status_code=status.HTTP_302_FOUND)
    response.delete_cookie(STATE_COOKIE)
    response.delete_cookie(REFERRAL_COOKIE)
    return response
