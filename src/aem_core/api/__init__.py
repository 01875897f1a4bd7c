"""AEM ingestion API layer for host applications."""
from .auth import get_settings, require_api_key
from .routes import get_reporter, router

__all__ = ["get_reporter", "get_settings", "require_api_key", "router"]
