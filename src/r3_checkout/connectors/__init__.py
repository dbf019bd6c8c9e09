"""External service connectors."""
from r3_checkout.connectors.base import CommercePlatform, PaymentProvider
from r3_checkout.connectors.shopify import ShopifyAdminClient
from r3_checkout.connectors.stripe import StripeConnector

__all__ = [
    "CommercePlatform",
    "PaymentProvider",
    "ShopifyAdminClient",
    "StripeConnector",
]
