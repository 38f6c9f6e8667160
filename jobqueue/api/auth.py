"""
Authentication utilities for remote callers.

A caller exchanges an API key for a JWT whose `caller_id` claim is the
identity the job server's permission rules are evaluated against.
"""

from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from jobqueue.config import get_settings

# Anonymous callers are let through; permission rules decide what they may do
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    caller_id: str
    exp: datetime


class AuthenticatedCaller(BaseModel):
    """Identity of a remote caller; `caller_id` is None when anonymous."""

    caller_id: str | None = None


def create_access_token(
    caller_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        caller_id: The caller identifier.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(UTC)
    to_encode = {
        "caller_id": caller_id,
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

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

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
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    caller_id = payload.get("caller_id")
    if caller_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing caller_id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(caller_id=caller_id, exp=datetime.fromtimestamp(payload["exp"], UTC))


async def get_current_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> AuthenticatedCaller:
    """
    FastAPI dependency resolving the caller of a request.

    Args:
        credentials: The HTTP authorization credentials, if any.

    Returns:
        AuthenticatedCaller; anonymous when no bearer token was sent.

    Raises:
        HTTPException: If a token was sent and is invalid.
    """
    if credentials is None:
        return AuthenticatedCaller()
    token_data = decode_token(credentials.credentials)
    return AuthenticatedCaller(caller_id=token_data.caller_id)


# Type alias for dependency injection
CurrentCaller = Annotated[AuthenticatedCaller, Depends(get_current_caller)]


def validate_api_key(api_key: str, caller_id: str) -> bool:
    """
    Validate an API key for a caller.

    Keys are not stored by the job server; any non-empty key is accepted
    and what the caller may do is decided by the permission rules.

    Args:
        api_key: The API key to validate.
        caller_id: The caller identifier.

    Returns:
        True if the API key is valid.
    """
    return bool(api_key) and bool(caller_id)
