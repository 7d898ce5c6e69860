import base64
import hashlib
import hmac
import json
from urllib.parse import urlencode

WEBHOOK_SECRET = "webhook-test-secret"
API_SECRET = "api-test-secret"


def sign_b64(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Shopify-style base64 HMAC-SHA256 of a body."""
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def sign_hex(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook_request(topic: str, payload, shop: str = "demo.myshopify.com", secret: str = WEBHOOK_SECRET):
    """Body and headers for a signed webhook delivery."""
    body = json.dumps(payload).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
        "X-Shopify-Hmac-Sha256": sign_b64(body, secret),
    }
    return body, headers


def signed_query(params: dict, secret: str = API_SECRET) -> str:
    """Query string carrying Shopify's OAuth ``hmac`` parameter."""
    message = "&".join(f"{k}={v}" for k, v in sorted(params.items()))
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return urlencode(dict(params, hmac=digest))


def subscription_payload(amount="29.99", status="ACTIVE", name="Sales Pro",
                         gid="gid://shopify/AppSubscription/1"):
    return {
        "app_subscription": {
            "admin_graphql_api_id": gid,
            "name": name,
            "status": status,
            "line_items": [
                {"plan": {"pricing_details": {"price": {"amount": amount, "currency_code": "USD"}}}}
            ],
        }
    }
