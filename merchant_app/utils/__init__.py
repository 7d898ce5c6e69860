"""
Utility functions and helpers
"""

from .helpers import (
    utcnow,
    month_start,
    next_month,
    to_decimal,
    quantize_money,
    format_money,
    normalize_shop_domain,
    is_valid_shop_domain,
    is_valid_email,
    retry_on_failure
)
from .webhook_verify import (
    verify_webhook_hmac,
    verify_oauth_query_hmac,
    is_exempt_uninstall
)

__all__ = [
    "utcnow",
    "month_start",
    "next_month",
    "to_decimal",
    "quantize_money",
    "format_money",
    "normalize_shop_domain",
    "is_valid_shop_domain",
    "is_valid_email",
    "retry_on_failure",
    "verify_webhook_hmac",
    "verify_oauth_query_hmac",
    "is_exempt_uninstall"
]
