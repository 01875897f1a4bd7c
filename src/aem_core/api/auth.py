"""API key guard for the AEM ingestion API.

The expected key comes from the application's ``AEMSettings`` (``AEM_API_KEY``),
loaded once at startup and kept on ``app.state.settings``.
"""
import logging
import secrets
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..config import AEMSettings


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-AEM-API-KEY"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def get_settings(request: Request) -> AEMSettings:
    """Settings owned by the application, loaded from the environment on first use."""
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = AEMSettings.from_env()
        request.app.state.settings = settings
    return settings


async def require_api_key(
    api_key: Annotated[Optional[str], Security(api_key_header)] = None,
    settings: AEMSettings = Depends(get_settings),
) -> str:
    """Check the request's API key against the configured one.

    Args:
        api_key: Value of the X-AEM-API-KEY header, if sent
        settings: Application settings carrying the expected key

    Returns:
        The accepted API key

    Raises:
        HTTPException: 503 if no key is configured, 401 if the header is
            missing or does not match
    """
    if not settings.api_key:
        logger.error("AEM_API_KEY is not configured, rejecting API request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key authentication is not configured",
        )

    if not api_key or not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )

    return api_key
