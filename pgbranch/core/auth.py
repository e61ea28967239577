"""
Authentication dependencies for FastAPI
"""
import logging
import secrets
from typing import Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

# Security scheme
api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def get_settings(request: Request) -> Settings:
    """Settings the application was created with"""
    return request.app.state.settings


async def require_api_key(
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Require a valid API key unless running in development mode
    """
    if settings.is_development:
        return

    expected_key = settings.BRANCH_MANAGEMENT_API_KEY
    if not expected_key:
        logger.warning("BRANCH_MANAGEMENT_API_KEY is not set, rejecting request")

    if not api_key or not expected_key or not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Valid API key required",
        )
