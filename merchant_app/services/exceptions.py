"""
Domain errors raised by services and mapped to HTTP responses in the routes
"""


class ServiceError(Exception):
    """Base class for service-level failures"""


class AgencyNotFound(ServiceError):
    pass


class DuplicateAgency(ServiceError):
    """Email or referral code already taken"""


class ReferralConflict(ServiceError):
    """Shop is already attributed to a different agency"""


class UpstreamUnavailable(ServiceError):
    """The AI backend could not be reached or answered with an error"""


class ShopifyAPIError(ServiceError):
    """Shopify Admin or OAuth call failed"""
