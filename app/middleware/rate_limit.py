"""Rate limiting using SlowAPI."""

import secrets

from fastapi import Request, FastAPI
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from app.core.config import settings
from app.log.logging import logger

INTERNAL_BUCKET_KEY = "internal-service"


def get_request_identifier(request: Request) -> str:
    """
    Key requests by client address. Internal callers presenting the API key
    share one bucket so operator jobs never count against a user's address.
    """
    api_key = request.headers.get("X-API-Key")
    if api_key and settings.INTERNAL_API_KEY and secrets.compare_digest(api_key, settings.INTERNAL_API_KEY):
        return INTERNAL_BUCKET_KEY
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_request_identifier,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "Rate limit exceeded",
        event_type="rate_limit_exceeded",
        client_ip=get_remote_address(request),
        path=request.url.path,
        limit=str(exc.detail),
    )
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        status_code=429,
        content={
            "error": "RateLimitExceeded",
            "message": "Too many requests. Please slow down.",
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)}
    )


def setup_rate_limiting(app: FastAPI) -> None:
    """Attach the limiter; route decorators need app.state.limiter even when disabled."""
    app.state.limiter = limiter
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting is disabled", event_type="rate_limit_configured")
        return

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    logger.info(
        "Rate limiting configured",
        event_type="rate_limit_configured",
        default_limit=settings.RATE_LIMIT_DEFAULT,
        face_swap_limit=settings.RATE_LIMIT_FACE_SWAP,
        storage=settings.RATE_LIMIT_STORAGE_URI,
    )
