"""
Shopify request authenticity checks

Webhooks carry ``X-Shopify-Hmac-Sha256``: an HMAC-SHA256 of the raw body keyed
with the app secret. Each configured secret is tried against both the base64
and the hex encoding.
"""

import base64
import hashlib
import hmac
import logging
from typing import Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
SHOP_HEADER = "x-shopify-shop-domain"

UNINSTALL_TOPIC = "app/uninstalled"


def _candidate_digests(body: bytes, secret: str) -> tuple:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8"), digest.hex()


def verify_webhook_hmac(body: bytes, signature_header: Optional[str], secrets: Iterable[str]) -> bool:
    """
    Verify a webhook signature against any configured secret

    Args:
        body: Raw request body bytes
        signature_header: Value of X-Shopify-Hmac-Sha256
        secrets: Secrets in priority order; empty entries are skipped

    Returns:
        bool: True iff the base64 or hex digest for some secret matches
    """
    if not signature_header:
        logger.warning("Missing webhook HMAC header")
        return False

    provided = signature_header.strip()
    if not provided.isascii():
        return False
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]

    configured = [s for s in secrets if s]
    if not configured:
        logger.warning("No webhook secret configured, rejecting webhook")
        return False

    for index, secret in enumerate(configured):
        b64_digest, hex_digest = _candidate_digests(body, secret)
        if hmac.compare_digest(b64_digest, provided) or hmac.compare_digest(hex_digest, provided.lower()):
            if index > 0:
                logger.info("Webhook verified with fallback secret")
            return True

    return False


def is_exempt_uninstall(topic: Optional[str], body: bytes) -> bool:
    """Shopify can deliver app/uninstalled with an empty, unsigned body"""
    return (topic or "").lower() == UNINSTALL_TOPIC and not body.strip()


def verify_oauth_query_hmac(params: Mapping[str, str], secret: str) -> bool:
    """
    Verify the ``hmac`` query parameter Shopify appends to OAuth redirects

    Args:
        params: Query parameters as received
        secret: App API secret

    Returns:
        bool: True if the hex HMAC over the sorted remaining parameters matches
    """
    provided = params.get("hmac")
    if not provided or not secret or not provided.isascii():
        return False

    message = "&".join(
        f"{key}={value}"
        for key, value in sorted(params.items())
        if key not in ("hmac", "signature")
    )
    computed = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, provided)
