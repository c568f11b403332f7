"""REST and WebSocket surface for the ingestion engine."""
from .auth import require_api_key
from .routes import router, ws_router

__all__ = ["require_api_key", "router", "ws_router"]
