"""Custom exceptions for the Meta insights source."""
from typing import Optional


class AdSourceError(Exception):
    """Raised for Meta Marketing API errors (non-200, transport failures)."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class RateLimitError(AdSourceError):
    """Raised on HTTP 429; the page is retried after backoff."""

    def __init__(self, message: str = "Meta API rate limited"):
        super().__init__(message, status=429)
