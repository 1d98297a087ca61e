"""Database exception hierarchy.

Every storage failure that escapes a ledger operation is raised as one of these
classes so the API layer can answer with a stable error code, the right HTTP
status and, for transient conditions, a ``Retry-After`` hint.
"""

from enum import Enum, auto
from typing import Optional, Dict, Any

from fastapi import status

from app.core.exceptions import ServiceException


class DatabaseErrorCode(Enum):
    """Classification of database failures."""

    CONNECTION_REFUSED = auto()
    CONNECTION_LOST = auto()
    CONNECTION_TIMEOUT = auto()
    AUTH_FAILED = auto()
    INSUFFICIENT_RESOURCES = auto()
    LOCK_TIMEOUT = auto()        # row lock not granted in time, deadlock, serialization failure
    INTEGRITY_ERROR = auto()
    DATA_ERROR = auto()
    SYSTEM_ERROR = auto()
    UNKNOWN_ERROR = auto()


class DatabaseException(ServiceException):
    """Base exception for database-related errors."""

    default_detail = "Database error"
    default_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = DatabaseErrorCode.UNKNOWN_ERROR
    default_retry_after: Optional[int] = None

    def __init__(
        self,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        error_code: Optional[DatabaseErrorCode] = None,
        retry_after: Optional[int] = None,
        error_details: Optional[Dict[str, Any]] = None
    ):
        status_code = status_code or self.default_status
        self.error_code = error_code or self.default_code
        self.error_details = error_details or {}
        retry_after = retry_after if retry_after is not None else self.default_retry_after

        if status_code == status.HTTP_503_SERVICE_UNAVAILABLE and retry_after:
            headers = dict(headers or {})
            headers["Retry-After"] = str(retry_after)

        super().__init__(
            status_code=status_code,
            detail={
                "detail": detail or self.default_detail,
                "error_code": self.error_code.name,
                "error_details": self.error_details,
            },
            headers=headers,
            context={"error_type": "DatabaseError"}
        )

    @property
    def retryable(self) -> bool:
        return self.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class DatabaseConnectionRefusedError(DatabaseException):
    default_detail = "Database connection refused"
    default_code = DatabaseErrorCode.CONNECTION_REFUSED
    default_retry_after = 30


class DatabaseConnectionLostError(DatabaseException):
    default_detail = "Database connection lost"
    default_code = DatabaseErrorCode.CONNECTION_LOST
    default_retry_after = 10


class DatabaseConnectionTimeoutError(DatabaseException):
    default_detail = "Database connection timed out"
    default_code = DatabaseErrorCode.CONNECTION_TIMEOUT
    default_retry_after = 20


class DatabaseAuthError(DatabaseException):
    default_detail = "Database authentication failed"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = DatabaseErrorCode.AUTH_FAILED


class InsufficientResourcesError(DatabaseException):
    default_detail = "Database server has insufficient resources"
    default_code = DatabaseErrorCode.INSUFFICIENT_RESOURCES
    default_retry_after = 60


class LockTimeoutError(DatabaseException):
    """The balance row stayed locked by another operation for too long."""

    default_detail = "Balance is busy, please retry"
    default_code = DatabaseErrorCode.LOCK_TIMEOUT
    default_retry_after = 1


class DatabaseIntegrityError(DatabaseException):
    default_detail = "Database integrity constraint violated"
    default_status = status.HTTP_409_CONFLICT
    default_code = DatabaseErrorCode.INTEGRITY_ERROR


class DatabaseDataError(DatabaseException):
    default_detail = "Invalid data for database operation"
    default_status = status.HTTP_400_BAD_REQUEST
    default_code = DatabaseErrorCode.DATA_ERROR


class DatabaseSystemError(DatabaseException):
    default_detail = "Database system error"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = DatabaseErrorCode.SYSTEM_ERROR
