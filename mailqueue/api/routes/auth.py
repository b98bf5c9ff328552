"""
Authentication routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from mailqueue.api.auth import create_access_token, validate_api_key
from mailqueue.config import get_settings
from mailqueue.types.api import AuthRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange the admin API key for a JWT access token.",
)
async def get_token(request: AuthRequest) -> TokenResponse:
    """
    Get an access token using API key authentication.

    Raises:
        HTTPException: If the API key is wrong.
    """
    if not validate_api_key(request.api_key):
        logger.warning("Rejected API key", extra={"operator": request.operator})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    settings = get_settings()
    access_token = create_access_token(operator=request.operator)

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.api_access_token_expire_minutes * 60,
    )
