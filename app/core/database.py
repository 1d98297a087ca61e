import os
import asyncio
import time
import random
from typing import AsyncGenerator, Optional, Dict, Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.db_utils import retry_exceptions, classify_exception, healthcheck_database
from app.log.logging import logger

TEST_MODE = os.getenv("PYTEST_RUNNING") == "true"

# Get the appropriate database URL based on environment
database_url = settings.test_database_url if TEST_MODE else settings.database_url

pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "10"))
pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "30"))
pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1800"))


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options only apply to server databases; SQLite uses its own pool."""
    if make_url(url).get_backend_name() == "sqlite":
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_timeout": pool_timeout,
        "pool_recycle": pool_recycle,
        "pool_pre_ping": True,
    }


logger.info(
    "Database initialization",
    event_type="database_init",
    backend=make_url(database_url).get_backend_name(),
    test_mode=TEST_MODE,
    pool_size=pool_size,
    max_overflow=max_overflow
)

engine = create_async_engine(database_url, echo=False, **_engine_options(database_url))

AsyncSessionLocal = async_sessionmaker(
    bind=engine, expire_on_commit=False, autoflush=False
)

# Connection health tracking used by the health endpoints
_last_connection_error: Optional[float] = None
_connection_error_count: int = 0
_in_degraded_mode: bool = False
MAX_ERROR_COUNT_BEFORE_DEGRADATION = 3
ERROR_RESET_PERIOD = 300


def get_connection_state() -> Dict[str, Any]:
    return {
        "in_degraded_mode": _in_degraded_mode,
        "error_count": _connection_error_count,
    }


def _record_connection_error() -> None:
    global _last_connection_error, _connection_error_count, _in_degraded_mode
    _last_connection_error = time.time()
    _connection_error_count += 1
    if not _in_degraded_mode and _connection_error_count >= MAX_ERROR_COUNT_BEFORE_DEGRADATION:
        _in_degraded_mode = True
        logger.warning(
            "Entering database degraded mode after multiple connection failures",
            event_type="db_degraded_mode_enter",
            error_count=_connection_error_count
        )


def _record_connection_success() -> None:
    global _last_connection_error, _connection_error_count, _in_degraded_mode
    if _last_connection_error is None:
        return
    if time.time() - _last_connection_error > ERROR_RESET_PERIOD:
        _connection_error_count = 0
        _last_connection_error = None
        if _in_degraded_mode:
            _in_degraded_mode = False
            logger.info(
                "Exiting database degraded mode after successful connection",
                event_type="db_degraded_mode_exit"
            )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to obtain a new database session for each request.

    Opening the session is retried with jittered exponential backoff when the
    failure is transient. Errors raised by the request handler itself are
    never retried here.
    """
    max_retries = 3
    delay = 0.5
    max_delay = 5.0

    for attempt in range(max_retries + 1):
        try:
            session = AsyncSessionLocal()
            await session.connection()
        except SQLAlchemyError as e:
            await session.close()
            _record_connection_error()
            exception_class, error_details = classify_exception(e)
            should_retry = any(
                isinstance(e, retry_exc) or exception_class is retry_exc
                for retry_exc in retry_exceptions
            )
            if not should_retry or attempt >= max_retries:
                logger.error(
                    f"Could not open database session after {attempt + 1} attempts",
                    event_type="db_session_error",
                    attempts=attempt + 1,
                    **error_details
                )
                raise exception_class(error_details=error_details) from e

            delay = min(delay * 2.0 * random.uniform(0.8, 1.2), max_delay)
            logger.warning(
                f"Database session attempt {attempt + 1}/{max_retries} failed, retrying in {delay:.2f}s",
                event_type="db_operation_retry",
                attempt=attempt + 1,
                delay=delay,
                error_type=type(e).__name__
            )
            await asyncio.sleep(delay)
            continue

        _record_connection_success()
        try:
            yield session
        finally:
            await session.close()
        return


async def check_db_health() -> Dict[str, Any]:
    """Check database health and return status information."""
    try:
        async with AsyncSessionLocal() as session:
            return await healthcheck_database(session)
    except Exception as e:
        exception_class, error_details = classify_exception(e)
        return {
            "status": "unhealthy",
            "error": str(e),
            "error_type": exception_class.__name__,
            **get_connection_state(),
            "error_details": error_details
        }
