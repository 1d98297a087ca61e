"""Error body schemas for API documentation.

Every handler in ``app.core.error_handlers`` renders one of these shapes.
"""

from typing import Optional, Any, Dict
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response for API errors."""
    error: str = Field(
        ...,
        description="Error type identifier",
        examples=["BadRequest"]
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        examples=["Amount must be a positive integer"]
    )
    request_id: Optional[str] = Field(
        None,
        description="Request ID for debugging and support",
        examples=["550e8400-e29b-41d4-a716-446655440000"]
    )
    details: Optional[Any] = Field(None, description="Validation errors, when the request body was rejected")


class AuthErrorResponse(ErrorResponse):
    """Error response for authentication failures (401)."""

    model_config = {
        "json_schema_extra": {
            "example": {
                "error": "TokenExpired",
                "message": "Session expired. Please log in again.",
                "request_id": "550e8400-e29b-41d4-a716-446655440000"
            }
        }
    }


class DatabaseErrorResponse(BaseModel):
    """Classified storage failure; 503 bodies come with a Retry-After header."""
    detail: str = Field(..., examples=["Balance is busy, please retry"])
    error_code: str = Field(..., examples=["LOCK_TIMEOUT"])
    error_details: Dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
