"""HTTP-aware exception base classes."""

from typing import Any, Dict, Optional

from fastapi import HTTPException


class ServiceException(HTTPException):
    """HTTPException carrying structured context for logging."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.context = context or {}
        self.error_detail = detail


class AuthException(ServiceException):
    """Raised when the caller cannot be authenticated or authorised."""
