"""
FastAPI Dependencies - API key authentication.

Service callers send X-API-Key; admin adjustments additionally need X-Admin-Key.
"""

import secrets

from fastapi import Header, HTTPException, status
from structlog import get_logger

from costledger.config import settings

logger = get_logger(__name__)


def _key_matches(provided: str | None, expected: str) -> bool:
    """Constant-time comparison; an unset expected key never matches."""
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Raises:
        HTTPException 401 if missing or invalid
    """
    if not _key_matches(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", has_api_key=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Admin API key"),
) -> None:
    """
    FastAPI dependency to validate the X-Admin-Key header.

    Raises:
        HTTPException 403 if missing or invalid
    """
    if not _key_matches(x_admin_key, settings.admin_api_key):
        logger.warning("admin_key_rejected", has_admin_key=bool(x_admin_key))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
