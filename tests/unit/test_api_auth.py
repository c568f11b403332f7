"""Unit tests for API authentication."""
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from roas_core.api.auth import require_api_key
from roas_core.config import Settings


def _request(api_key):
    """Stand-in request whose app carries a context with these settings."""
    context = SimpleNamespace(settings=Settings(api_key=api_key))
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(context=context)))


@pytest.mark.asyncio
async def test_require_api_key_success():
    """Test API key validation succeeds with the key from settings."""
    result = await require_api_key(_request("test-secret-key"), "test-secret-key")
    assert result == "test-secret-key"


@pytest.mark.asyncio
async def test_require_api_key_invalid():
    """Test API key validation fails with incorrect key (401)."""
    with pytest.raises(HTTPException) as exc_info:
        await require_api_key(_request("correct-key"), "wrong-key")

    assert exc_info.value.status_code == 401
    assert "Invalid API key" in exc_info.value.detail
    assert exc_info.value.headers == {"WWW-Authenticate": "API-Key"}


@pytest.mark.asyncio
async def test_require_api_key_missing():
    """Test API key validation fails when header is missing (401)."""
    with pytest.raises(HTTPException) as exc_info:
        await require_api_key(_request("test-key"), None)

    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_require_api_key_not_configured(monkeypatch):
    """Settings without a key close the trigger API even if the env var is set later."""
    monkeypatch.setenv("ROAS_API_KEY", "env-only-key")

    with pytest.raises(HTTPException) as exc_info:
        await require_api_key(_request(None), "env-only-key")

    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_require_api_key_without_context():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(HTTPException) as exc_info:
        await require_api_key(request, "any-key")

    assert exc_info.value.status_code == 503
