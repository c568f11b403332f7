"""Job trigger API key check.

The expected key lives on the app's IngestionContext settings
(ROAS_API_KEY at startup). With no key configured the trigger routes
stay closed rather than open.
"""
import logging
import secrets
from typing import Annotated, Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader


logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-ROAS-API-KEY", auto_error=False)


def _configured_key(request: Request) -> Optional[str]:
    context = getattr(request.app.state, "context", None)
    if context is None:
        return None
    return context.settings.api_key


async def require_api_key(
    request: Request,
    api_key: Annotated[Optional[str], Security(api_key_header)] = None,
) -> str:
    """Check X-ROAS-API-KEY against the configured key.

    Raises:
        HTTPException: 503 if no key is configured, 401 if the header is
            missing or does not match
    """
    expected_key = _configured_key(request)
    if not expected_key:
        logger.warning("Job trigger rejected: ROAS_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job triggers are disabled",
        )

    if not api_key or not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )

    return api_key
