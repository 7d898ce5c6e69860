import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import settings
from ..utils.helpers import retry_on_failure
from .exceptions import ShopifyAPIError

logger = logging.getLogger(__name__)

APP_SUBSCRIPTION_CREATE = """
mutation AppSubscriptionCreate($name: String!, $returnUrl: URL!, $trialDays: Int, $test: Boolean,
                               $lineItems: [AppSubscriptionLineItemInput!]!) {
  appSubscriptionCreate(name: $name, returnUrl: $returnUrl, trialDays: $trialDays, test: $test,
                        lineItems: $lineItems) {
    appSubscription { id status }
    confirmationUrl
    userErrors { field message }
  }
}
"""


class ShopifyClient:
    """Shopify OAuth token exchange and Admin GraphQL calls"""

    def __init__(self):
        self.session = self._create_session()
        self.headers = {
            "User-Agent": settings.USER_AGENT,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=settings.MAX_RETRIES,
            backoff_factor=settings.RETRY_DELAY,
            status_forcelist=[429, 500, 502, 503, 504],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def authorize_url(self, shop: str, state: str, redirect_uri: str) -> str:
        """URL that sends the merchant to Shopify's install consent screen"""
        query = urlencode({
            "client_id": settings.SHOPIFY_API_KEY,
            "scope": settings.SHOPIFY_SCOPES,
            "redirect_uri": redirect_uri,
            "state": state,
        })
        return f"https://{shop}/admin/oauth/authorize?{query}"

    @retry_on_failure(retries=settings.MAX_RETRIES, delay=settings.RETRY_DELAY,
                      exceptions=(requests.exceptions.ConnectionError, requests.exceptions.Timeout))
    def exchange_code(self, shop: str, code: str) -> Dict[str, Any]:
        """
        Trade the OAuth ``code`` for an offline access token

        Args:
            shop: Shop domain
            code: Authorization code from the callback

        Returns:
            dict: Shopify's token response (access_token, scope)

        Raises:
            ShopifyAPIError: Shopify rejected the exchange
        """
        response = self.session.post(
            f"https://{shop}/admin/oauth/access_token",
            json={
                "client_id": settings.SHOPIFY_API_KEY,
                "client_secret": settings.SHOPIFY_API_SECRET,
                "code": code,
            },
            headers=self.headers,
            timeout=settings.REQUEST_TIMEOUT,
        )

        if response.status_code >= 400:
            raise ShopifyAPIError(f"Token exchange failed for {shop}: HTTP {response.status_code}")

        data = response.json()
        if not data.get("access_token"):
            raise ShopifyAPIError(f"Token exchange for {shop} returned no access token")
        return data

    def graphql(self, shop: str, access_token: str, query: str,
                variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run an Admin GraphQL query and return its ``data`` block"""
        url = f"https://{shop}/admin/api/{settings.SHOPIFY_API_VERSION}/graphql.json"
        headers = dict(self.headers, **{"X-Shopify-Access-Token": access_token})

        try:
            response = self.session.post(url, json={"query": query, "variables": variables or {}},
                                         headers=headers, timeout=settings.REQUEST_TIMEOUT)
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Shopify GraphQL call failed for {shop}: {e}")
            raise ShopifyAPIError(f"Shopify GraphQL call failed: {e}")

        if payload.get("errors"):
            raise ShopifyAPIError(f"Shopify GraphQL errors: {payload['errors']}")
        return payload.get("data") or {}

    def create_app_subscription(self, shop: str, access_token: str, plan_name: str, price: float,
                                return_url: str, trial_days: int = 0,
                                test: bool = True) -> Dict[str, Any]:
        """
        Start a recurring app charge

        Returns:
            dict: subscription id/status and the merchant confirmation URL
        """
        variables = {
            "name": plan_name,
            "returnUrl": return_url,
            "trialDays": trial_days,
            "test": test,
            "lineItems": [{
                "plan": {
                    "appRecurringPricingDetails": {
                        "price": {"amount": price, "currencyCode": "USD"},
                        "interval": "EVERY_30_DAYS",
                    }
                }
            }],
        }
        data = self.graphql(shop, access_token, APP_SUBSCRIPTION_CREATE, variables)
        result = data.get("appSubscriptionCreate") or {}

        errors = result.get("userErrors") or []
        if errors:
            raise ShopifyAPIError("; ".join(e.get("message", "") for e in errors))

        return {
            "subscription": result.get("appSubscription"),
            "confirmation_url": result.get("confirmationUrl"),
        }
