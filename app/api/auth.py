"""Request authentication for trading endpoints.

User identity comes from the upstream auth layer as the X-User-Id header;
this service never manages sessions itself. Order endpoints additionally
require the service API key via X-API-Key. In development mode with no API
key configured, the key check is bypassed.
"""

import logging

from fastapi import Header, HTTPException, Security
from fastapi.security import APIKeyHeader

from app.config import settings

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Security(_api_key_header)) -> str:
    """Dependency that enforces API key authentication.

    Bypassed in development mode when no API key is configured.
    """
    # If no API key is configured and we're in dev mode, allow access
    if not settings.api_key and settings.app_env == "development":
        return "dev-bypass"

    if not settings.api_key:
        logger.warning("API key not configured but app_env=%s, blocking request", settings.app_env)
        raise HTTPException(status_code=403, detail="API key not configured on server")

    if not api_key or api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

    return api_key


async def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Authenticated user id forwarded by the auth layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()
