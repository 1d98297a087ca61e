"""Authentication dependencies."""

import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status, Request, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from pydantic import BaseModel

from app.core.config import settings
from app.core.exceptions import AuthException
from app.core.security import decode_access_token
from app.log.logging import logger

bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """Caller identity taken from a verified access token."""
    user_id: str
    email: Optional[str] = None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> AuthenticatedUser:
    """
    Resolve the caller from the bearer token.

    The identity provider owns users; the ledger trusts the ``sub`` claim of
    any token whose signature and audience verify.

    Raises:
        AuthException: if the token is missing, invalid or expired
    """
    credentials_exception = AuthException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
        context={"error_type": "AuthError"}
    )
    if credentials is None or not credentials.credentials:
        raise credentials_exception

    if not settings.AUTH_JWT_SECRET:
        logger.error("AUTH_JWT_SECRET not configured", event_type="config_error")
        raise credentials_exception

    try:
        payload = decode_access_token(credentials.credentials)
    except ExpiredSignatureError:
        raise AuthException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please log in again.",
            headers={"WWW-Authenticate": "Bearer"},
            context={"error_type": "TokenExpired"}
        )
    except JWTError as e:
        logger.debug(f"JWT validation error: {e}", event_type="auth_debug")
        raise credentials_exception

    subject = payload.get("sub")
    if not subject:
        raise credentials_exception

    return AuthenticatedUser(user_id=str(subject), email=payload.get("email"))


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Header(None, alias="X-API-Key", description="Internal service API key")
) -> str:
    """
    Authenticate operator / service-to-service calls by API key.

    Raises:
        HTTPException: 500 if no key is configured, 403 if the key does not match
    """
    if not settings.INTERNAL_API_KEY:
        logger.error(
            "INTERNAL_API_KEY not configured in settings",
            event_type="config_error",
            endpoint=request.url.path
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal service authentication not configured"
        )

    if not api_key or not secrets.compare_digest(api_key, settings.INTERNAL_API_KEY):
        logger.warning(
            "Invalid API key attempt for internal service",
            event_type="security_violation",
            endpoint=request.url.path
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key for internal service access"
        )

    return "internal_service"
