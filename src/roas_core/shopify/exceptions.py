"""Custom exceptions for the Shopify order source."""
from typing import Optional


class OrderSourceError(Exception):
    """Raised for Shopify REST errors (HTTP 4xx/5xx, transport failures)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class OrderNotFoundError(OrderSourceError):
    """Raised when a single order, variant or inventory item returns 404."""

    def __init__(self, resource: str, resource_id: object):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found", status=404)
