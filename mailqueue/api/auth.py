"""
Authentication and authorization utilities.

Admin endpoints are protected by short-lived JWTs obtained by exchanging
the shared admin API key.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from mailqueue.config import get_settings

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    operator: str
    exp: datetime


class AuthenticatedOperator(BaseModel):
    """Authenticated operator context."""

    operator: str


def create_access_token(
    operator: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        operator: Identifier of the operator the token is issued to.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(timezone.utc)

    to_encode = {
        "sub": operator,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    operator = payload.get("sub")
    if not operator:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        operator=operator,
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedOperator:
    """FastAPI dependency resolving the bearer token to an operator."""
    token_data = decode_token(credentials.credentials)
    return AuthenticatedOperator(operator=token_data.operator)


# Type alias for dependency injection
CurrentOperator = Annotated[AuthenticatedOperator, Depends(get_current_operator)]


def validate_api_key(api_key: str) -> bool:
    """
    Check an API key against the configured admin key.

    Args:
        api_key: The API key to validate.

    Returns:
        True if the API key matches.
    """
    expected = get_settings().api_admin_key
    if not api_key or not expected:
        return False
    return hmac.compare_digest(api_key.encode(), expected.encode())
