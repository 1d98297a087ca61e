"""Request timeout middleware."""

import asyncio
from typing import Dict, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse

from app.log.logging import logger
from app.middleware.request_id import get_request_id

DEFAULT_EXCLUDED_PATHS = ("/healthcheck", "/docs", "/redoc", "/openapi.json")


class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Answer 504 when a request runs longer than its budget.

    ``path_timeouts`` maps path suffixes to their own budget so slow proxy
    routes (face swap retries an upstream API) can outlive the default.
    """

    def __init__(
        self,
        app,
        timeout_seconds: float = 30.0,
        path_timeouts: Optional[Dict[str, float]] = None,
        exclude_paths: Optional[Sequence[str]] = None
    ):
        super().__init__(app)
        self.timeout_seconds = timeout_seconds
        self.path_timeouts = path_timeouts or {}
        self.exclude_paths = tuple(exclude_paths or DEFAULT_EXCLUDED_PATHS)

    def timeout_for(self, path: str) -> Optional[float]:
        """Timeout budget for ``path``; None when the path is excluded."""
        if path.startswith(self.exclude_paths):
            return None
        for suffix, seconds in self.path_timeouts.items():
            if path.rstrip("/").endswith(suffix):
                return seconds
        return self.timeout_seconds

    async def dispatch(self, request: Request, call_next) -> Response:
        timeout = self.timeout_for(request.url.path)
        if timeout is None:
            return await call_next(request)

        try:
            return await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            request_id = get_request_id()
            logger.warning(
                f"Request timeout after {timeout}s",
                event_type="request_timeout",
                path=request.url.path,
                method=request.method,
                timeout_seconds=timeout
            )
            return JSONResponse(
                status_code=504,
                content={
                    "error": "GatewayTimeout",
                    "message": f"Request processing exceeded {timeout} seconds",
                    "request_id": request_id
                }
            )


def setup_timeout_middleware(
    app,
    timeout_seconds: float = 30.0,
    path_timeouts: Optional[Dict[str, float]] = None,
    exclude_paths: Optional[Sequence[str]] = None
):
    app.add_middleware(
        TimeoutMiddleware,
        timeout_seconds=timeout_seconds,
        path_timeouts=path_timeouts,
        exclude_paths=exclude_paths
    )
