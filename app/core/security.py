"""JWT handling for identity-provider issued access tokens."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from app.core.config import settings
from app.log.logging import logger


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Verify an access token and return its claims.

    Signature, audience and expiry are all checked; expiry allows
    ``AUTH_JWT_LEEWAY_SECONDS`` of clock skew.

    Raises:
        jose.ExpiredSignatureError: the token expired beyond the leeway
        jose.JWTError: any other invalidity
    """
    payload = jwt.decode(
        token,
        settings.AUTH_JWT_SECRET,
        algorithms=[settings.AUTH_JWT_ALGORITHM],
        audience=settings.AUTH_JWT_AUDIENCE,
        options={"leeway": settings.AUTH_JWT_LEEWAY_SECONDS},
    )
    logger.debug("Access token verified", event_type="auth_token_verified", subject=payload.get("sub"))
    return payload


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Mint a token shaped like the identity provider's.

    Production tokens come from the provider; this exists for local
    development and tests.
    """
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "aud": settings.AUTH_JWT_AUDIENCE,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": int((now + (expires_delta or timedelta(minutes=15))).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)
