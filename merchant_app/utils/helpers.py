import logging
import re
import time
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import wraps
from typing import Any, Optional

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def month_start(moment: Optional[datetime] = None) -> date:
    """
    First day of the calendar month containing ``moment`` (UTC)

    Args:
        moment: Timestamp to bucket, defaults to now

    Returns:
        date: First day of that month
    """
    moment = moment or utcnow()
    return date(moment.year, moment.month, 1)


def next_month(month: date) -> date:
    """First day of the month after ``month``"""
    if month.month == 12:
        return date(month.year + 1, 1, 1)
    return date(month.year, month.month + 1, 1)


def to_decimal(value: Any) -> Decimal:
    """
    Parse a money-like value into a Decimal

    Args:
        value: str, int, float, Decimal or None

    Returns:
        Decimal: Parsed value, Decimal("0") when missing or unparseable
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")

    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return Decimal("0")

    if not parsed.is_finite():
        return Decimal("0")
    return parsed


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up"""
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_money(value: Optional[Decimal]) -> str:
    """
    Format an amount with two decimals for reports and CSV

    Args:
        value: Amount or None

    Returns:
        str: e.g. "25.00"
    """
    return f"{quantize_money(value or Decimal('0')):.2f}"


def normalize_shop_domain(shop: Optional[str]) -> str:
    """
    Normalize a shop identifier to its myshopify domain

    Args:
        shop: Shop domain, possibly with protocol or trailing slash

    Returns:
        str: Lower-cased bare domain
    """
    if not shop:
        return ""

    shop = shop.strip().lower()
    shop = re.sub(r"^https?://", "", shop)
    return shop.rstrip("/")


def is_valid_shop_domain(shop: Optional[str]) -> bool:
    """Check that the value looks like ``<name>.myshopify.com``"""
    return bool(shop) and bool(SHOP_DOMAIN_RE.match(shop))


def is_valid_email(email: str) -> bool:
    """
    Validate email format

    Args:
        email: Email to validate

    Returns:
        bool: True if valid email format
    """
    email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(email_pattern, (email or "").strip()))


def retry_on_failure(retries: int = 3, delay: float = 1.0, exceptions: tuple = (Exception,)):
    """
    Decorator to retry function calls on failure

    Args:
        retries: Number of retry attempts
        delay: Delay between retries in seconds, grows with each attempt
        exceptions: Exception types that trigger a retry
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    if attempt < retries:
                        logger.warning(f"Attempt {attempt + 1} failed for {func.__name__}: {e}")
                        time.sleep(delay * (attempt + 1))
                    else:
                        logger.error(f"All {retries + 1} attempts failed for {func.__name__}: {e}")

            raise last_exception

        return wrapper

    return decorator
