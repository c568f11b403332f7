"""Shopify integration modules."""
from .exceptions import OrderNotFoundError, OrderSourceError
from .orders_client import ORDER_FIELDS, ShopifyOrdersClient

__all__ = [
    "ORDER_FIELDS",
    "ShopifyOrdersClient",
    "OrderSourceError",
    "OrderNotFoundError",
]
