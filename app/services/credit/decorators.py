"""Decorators for the credit service module."""

import functools
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from app.core.db_exceptions import DatabaseException
from app.core.db_utils import to_database_exception
from app.log.logging import logger

# Type variable for generic function return type
T = TypeVar('T')


def ledger_operation(func: Callable[..., T]) -> Callable[..., T]:
    """
    Run a mutating ledger operation as one unit of work.

    Tagged results (success or expected refusal) pass through untouched.
    Any failure rolls the session back so nothing is ever partially applied;
    storage failures are re-raised as a classified ``DatabaseException``.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> T:
        # Get self (service instance) from args
        self = args[0]
        try:
            return await func(*args, **kwargs)
        except DatabaseException:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            db_error = to_database_exception(e, func.__name__)
            logger.error(
                f"Ledger operation {func.__name__} rolled back: {str(e)}",
                event_type="ledger_operation_failed",
                operation=func.__name__,
                error_code=db_error.error_code.name,
                error_type=type(e).__name__
            )
            raise db_error from e
        except Exception:
            await self.db.rollback()
            raise
    return wrapper
