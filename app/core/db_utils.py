"""Database utilities for error classification, lock bounding and health checks."""

import time
from typing import Dict, Any, Optional, Type, Tuple

from sqlalchemy.exc import SQLAlchemyError, OperationalError, DBAPIError
from sqlalchemy.sql import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db_exceptions import (
    DatabaseConnectionRefusedError,
    DatabaseConnectionLostError,
    DatabaseConnectionTimeoutError,
    DatabaseAuthError,
    InsufficientResourcesError,
    LockTimeoutError,
    DatabaseIntegrityError,
    DatabaseDataError,
    DatabaseSystemError,
    DatabaseException,
)
from app.log.logging import logger

# Exceptions worth retrying when opening a session
retry_exceptions = [
    DatabaseConnectionRefusedError,
    DatabaseConnectionLostError,
    DatabaseConnectionTimeoutError,
    InsufficientResourcesError,
    OperationalError
]

# PostgreSQL SQLSTATE codes mapped to our exception types
PG_ERROR_CODE_MAP: Dict[str, Type[DatabaseException]] = {
    '08001': DatabaseConnectionRefusedError,
    '08006': DatabaseConnectionLostError,
    '08P01': DatabaseConnectionLostError,
    '28P01': DatabaseAuthError,
    '28000': DatabaseAuthError,
    '53000': InsufficientResourcesError,
    '53100': InsufficientResourcesError,
    '53200': InsufficientResourcesError,
    '53300': InsufficientResourcesError,
    '53400': InsufficientResourcesError,
    '55P03': LockTimeoutError,   # lock_not_available
    '40P01': LockTimeoutError,   # deadlock_detected
    '40001': LockTimeoutError,   # serialization_failure
    '23000': DatabaseIntegrityError,
    '23001': DatabaseIntegrityError,
    '23502': DatabaseIntegrityError,
    '23503': DatabaseIntegrityError,
    '23505': DatabaseIntegrityError,
    '23514': DatabaseIntegrityError,
    '22000': DatabaseDataError,
    '22001': DatabaseDataError,
    '22003': DatabaseDataError,
    '22007': DatabaseDataError,
    '22P02': DatabaseDataError,
    '57000': DatabaseSystemError,
    '57014': DatabaseSystemError,
    '58000': DatabaseSystemError,
    '58030': DatabaseSystemError,
    'XX000': DatabaseSystemError,
}


def _sqlstate(exc: Exception) -> Optional[str]:
    """Extract the SQLSTATE from a wrapped DBAPI error (psycopg or asyncpg)."""
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if code:
            return code
        # asyncpg errors arrive wrapped in the SQLAlchemy adapter exception
        cause = getattr(orig, "__cause__", None)
        if cause is not None:
            return getattr(cause, "sqlstate", None)
    return getattr(exc, "pgcode", None)


def classify_exception(
    exc: Exception
) -> Tuple[Type[DatabaseException], Dict[str, Any]]:
    """Classify a database exception to a more specific error type.

    Args:
        exc: The exception to classify

    Returns:
        Tuple containing the exception class and error details
    """
    error_details = {
        "original_error": str(exc),
        "error_type": type(exc).__name__
    }

    if isinstance(exc, DatabaseException):
        return type(exc), error_details

    if isinstance(exc, SQLAlchemyError):
        sqlstate = _sqlstate(exc)
        if sqlstate:
            error_details["sqlstate"] = sqlstate
            return PG_ERROR_CODE_MAP.get(sqlstate, DatabaseException), error_details

    error_str = str(exc).lower()
    if "lock timeout" in error_str or "could not obtain lock" in error_str or "database is locked" in error_str:
        return LockTimeoutError, error_details
    if "connection refused" in error_str:
        return DatabaseConnectionRefusedError, error_details
    if "timeout" in error_str:
        return DatabaseConnectionTimeoutError, error_details
    if "lost connection" in error_str or "broken pipe" in error_str:
        return DatabaseConnectionLostError, error_details
    if "connection" in error_str and ("reset" in error_str or "closed" in error_str):
        return DatabaseConnectionLostError, error_details
    if isinstance(exc, OperationalError):
        if "authentication" in error_str or "password" in error_str:
            return DatabaseAuthError, error_details
        if "too many connections" in error_str or "out of memory" in error_str:
            return InsufficientResourcesError, error_details

    return DatabaseException, error_details


def to_database_exception(exc: Exception, operation: str) -> DatabaseException:
    """Build the classified exception to raise in place of ``exc``."""
    exception_class, error_details = classify_exception(exc)
    error_details["operation"] = operation
    return exception_class(error_details=error_details)


async def set_lock_timeout(session: AsyncSession, timeout_ms: int) -> None:
    """
    Bound how long the current transaction waits for row locks.

    Only PostgreSQL supports a per-transaction lock timeout; other dialects
    (SQLite in tests) serialise writers on their own.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    # SET LOCAL does not accept bind parameters; the value is an int we control.
    await session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_ms)}ms'"))


def dialect_insert(session: AsyncSession):
    """``insert`` construct of the session's dialect, for ``ON CONFLICT`` upserts."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def healthcheck_database(db_session) -> Dict[str, Any]:
    """Perform a health check on the database.

    Args:
        db_session: SQLAlchemy async session

    Returns:
        Dictionary with health check results
    """
    start_time = time.time()
    try:
        result = await db_session.execute(text("SELECT 1"))
        row = result.scalar()

        return {
            "status": "healthy" if row == 1 else "degraded",
            "response_time_ms": round((time.time() - start_time) * 1000, 2),
            "message": "Database connection successful"
        }
    except Exception as exc:
        exception_class, error_details = classify_exception(exc)
        elapsed_ms = round((time.time() - start_time) * 1000, 2)

        logger.error(
            "Database health check failed",
            event_type="db_healthcheck_failed",
            error_type=exception_class.__name__,
            response_time_ms=elapsed_ms,
            error_details=error_details
        )

        return {
            "status": "unhealthy",
            "response_time_ms": elapsed_ms,
            "error": str(exc),
            "error_type": exception_class.__name__,
            "error_details": error_details
        }
