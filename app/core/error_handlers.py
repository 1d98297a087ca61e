"""Error handlers for the application with consistent request_id tracking."""
from typing import Dict, Any

from fastapi import Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.db_exceptions import DatabaseException
from app.core.exceptions import AuthException
from app.core.responses import APIJSONResponse
from app.log.logging import logger
from app.middleware.request_id import get_request_id

ERROR_TYPES = {
    400: "BadRequest",
    401: "Unauthorized",
    402: "PaymentRequired",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    409: "Conflict",
    413: "PayloadTooLarge",
    415: "UnsupportedMediaType",
    422: "UnprocessableEntity",
    429: "RateLimitExceeded",
    502: "BadGateway",
    503: "ServiceUnavailable",
    504: "GatewayTimeout",
}


def _build_error_response(
    error: str,
    message: str,
    details: Any = None
) -> Dict[str, Any]:
    """
    Build the common error body: ``error`` type, human ``message``,
    ``request_id`` when inside a request and optional ``details``.
    """
    response = {
        "error": error,
        "message": message
    }

    request_id = get_request_id()
    if request_id:
        response["request_id"] = request_id

    if details is not None:
        response["details"] = details

    return response


async def auth_exception_handler(request: Request, exc: AuthException) -> APIJSONResponse:
    """Handle authentication exceptions."""
    error_type = exc.context.get("error_type", "AuthError")

    # Expired sessions are routine; everything else is worth an error line
    log = logger.warning if error_type == "TokenExpired" else logger.error
    log(
        f"Auth error on {request.url.path}: {exc.error_detail}",
        event_type="auth_error",
        error_type=error_type,
        status_code=exc.status_code,
        path=request.url.path
    )

    return APIJSONResponse(
        status_code=exc.status_code,
        content=_build_error_response(error=error_type, message=str(exc.error_detail)),
        headers=exc.headers
    )


async def database_exception_handler(request: Request, exc: DatabaseException) -> APIJSONResponse:
    """Handle database exceptions with appropriate status codes and retry information."""
    logger.error(
        f"Database error on {request.url.path}",
        event_type="db_api_error",
        error_code=exc.error_code.name,
        error_details=exc.error_details,
        retryable=exc.retryable,
        status_code=exc.status_code
    )

    content = dict(exc.detail)
    request_id = get_request_id()
    if request_id:
        content["request_id"] = request_id
    return APIJSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=exc.headers
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> APIJSONResponse:
    """Handle validation exceptions."""
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        f"Validation error on {request.url.path}",
        event_type="validation_error",
        path=request.url.path,
        method=request.method,
        errors=errors
    )
    return APIJSONResponse(
        status_code=422,
        content=_build_error_response(
            error="ValidationError",
            message="Invalid request data",
            details=errors
        )
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> APIJSONResponse:
    """Handle HTTP exceptions."""
    log = logger.warning if 400 <= exc.status_code < 500 else logger.error
    log(
        f"HTTP error on {request.url.path}",
        event_type="http_error",
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
        detail=str(exc.detail)[:200]
    )

    # Routes that shape their own error body (402 credit errors, webhook errors)
    # pass a dict carrying at least "error" or "message"; keep it intact.
    if isinstance(exc.detail, dict) and ("message" in exc.detail or "error" in exc.detail):
        content = dict(exc.detail)
        request_id = get_request_id()
        if request_id:
            content["request_id"] = request_id
        return APIJSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    return APIJSONResponse(
        status_code=exc.status_code,
        content=_build_error_response(
            error=ERROR_TYPES.get(exc.status_code, "HTTPError"),
            message=str(exc.detail)
        ),
        headers=exc.headers
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> APIJSONResponse:
    """Handle SQLAlchemy exceptions that escaped classification."""
    logger.error(
        f"SQLAlchemy error on {request.url.path}",
        event_type="db_sqlalchemy_error",
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True
    )

    return APIJSONResponse(
        status_code=500,
        content=_build_error_response(
            error="DatabaseError",
            message="A database error occurred. Please try again later."
        )
    )


async def generic_exception_handler(request: Request, exc: Exception) -> APIJSONResponse:
    """Handle generic/unhandled exceptions."""
    logger.error(
        f"Unhandled error on {request.url.path}",
        event_type="unhandled_error",
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    return APIJSONResponse(
        status_code=500,
        content=_build_error_response(
            error="InternalServerError",
            message="An unexpected error occurred."
        )
    )
