"""Utility functions for the credit service module."""

from datetime import datetime, UTC
from typing import Any, Optional

from app.log.logging import logger


def get_stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """
    Read a field from a Stripe object or a plain dict.

    Stripe objects raise on missing attributes and events may omit optional
    fields entirely, so every access goes through here.

    Args:
        obj: StripeObject, dict or None
        key: Field name
        default: Value returned when the field is absent or null

    Returns:
        The field value or ``default``
    """
    if obj is None:
        return default
    try:
        value = obj.get(key) if hasattr(obj, "get") else getattr(obj, key, None)
    except (AttributeError, KeyError):
        return default
    return default if value is None else value


def stripe_timestamp_to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert a Stripe unix timestamp to an aware UTC datetime.

    Args:
        value: Seconds since the epoch, possibly as a string

    Returns:
        datetime or None when the value is missing or malformed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        logger.warning(f"Unparseable Stripe timestamp: {value!r}",
                       event_type="stripe_timestamp_invalid",
                       value=str(value),
                       error=str(e))
        return None


def parse_credit_amount(value: Any) -> Optional[int]:
    """Parse a positive whole number of credits from event metadata."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return amount if amount > 0 else None
