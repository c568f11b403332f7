"""Meta Marketing API integration."""
from .exceptions import AdSourceError, RateLimitError
from .insights_client import MetaInsightsClient

__all__ = ["MetaInsightsClient", "AdSourceError", "RateLimitError"]
