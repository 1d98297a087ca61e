"""Subscription plan credit allotments and billing period extraction."""

from datetime import datetime, UTC
from typing import Any, Optional, Tuple

from app.core.config import settings
from app.services.credit.utils import get_stripe_value, stripe_timestamp_to_datetime


class PlanService:
    """
    Map Stripe subscription prices to the credits granted per billing period.

    Prices are matched on unit amount first; an unknown price falls back on
    the billing interval.
    """

    def __init__(
        self,
        monthly_price_cents: Optional[int] = None,
        monthly_credits: Optional[int] = None,
        yearly_price_cents: Optional[int] = None,
        yearly_credits: Optional[int] = None
    ):
        """
        Args:
            monthly_price_cents: Unit amount of the monthly plan, MONTHLY_PLAN_PRICE_CENTS by default
            monthly_credits: Credits per monthly period, MONTHLY_PLAN_CREDITS by default
            yearly_price_cents: Unit amount of the yearly plan, YEARLY_PLAN_PRICE_CENTS by default
            yearly_credits: Credits per yearly period, YEARLY_PLAN_CREDITS by default
        """
        self.monthly_price_cents = monthly_price_cents or settings.MONTHLY_PLAN_PRICE_CENTS
        self.monthly_credits = monthly_credits or settings.MONTHLY_PLAN_CREDITS
        self.yearly_price_cents = yearly_price_cents or settings.YEARLY_PLAN_PRICE_CENTS
        self.yearly_credits = yearly_credits or settings.YEARLY_PLAN_CREDITS

    def credits_for_price(self, unit_amount: Optional[int], interval: Optional[str] = None) -> int:
        """
        Credits granted per period for a price.

        Args:
            unit_amount: Price in the smallest currency unit
            interval: Billing interval (``month`` or ``year``)

        Returns:
            int: Credits for one billing period
        """
        if unit_amount == self.monthly_price_cents:
            return self.monthly_credits
        if unit_amount == self.yearly_price_cents:
            return self.yearly_credits
        if interval == "year":
            return self.yearly_credits
        return self.monthly_credits

    @staticmethod
    def _first_price(obj: Any) -> Optional[Any]:
        items = get_stripe_value(obj, "items")
        data = get_stripe_value(items, "data") or []
        if data:
            return get_stripe_value(data[0], "price") or get_stripe_value(data[0], "plan")
        # Invoices carry their prices on the line items
        lines = get_stripe_value(get_stripe_value(obj, "lines"), "data") or []
        if lines:
            return get_stripe_value(lines[0], "price") or get_stripe_value(lines[0], "plan")
        return get_stripe_value(obj, "plan")

    def credits_for_subscription(self, obj: Any) -> int:
        """Credits for a Stripe subscription or invoice object."""
        price = self._first_price(obj)
        unit_amount = get_stripe_value(price, "unit_amount")
        if unit_amount is None:
            unit_amount = get_stripe_value(price, "amount")
        recurring = get_stripe_value(price, "recurring")
        interval = get_stripe_value(recurring, "interval") or get_stripe_value(price, "interval")
        return self.credits_for_price(unit_amount, interval)

    @staticmethod
    def subscription_period(subscription: Any) -> Optional[Tuple[datetime, datetime]]:
        """Current period bounds from the subscription or, on newer API versions, its first item."""
        start = get_stripe_value(subscription, "current_period_start")
        end = get_stripe_value(subscription, "current_period_end")
        if start is None or end is None:
            data = get_stripe_value(get_stripe_value(subscription, "items"), "data") or []
            if data:
                start = get_stripe_value(data[0], "current_period_start")
                end = get_stripe_value(data[0], "current_period_end")
        return _period(start, end)

    @staticmethod
    def invoice_period(invoice: Any) -> Optional[Tuple[datetime, datetime]]:
        """Billed period from the first subscription line of an invoice."""
        lines = get_stripe_value(get_stripe_value(invoice, "lines"), "data") or []
        for line in lines:
            period = get_stripe_value(line, "period")
            bounds = _period(get_stripe_value(period, "start"), get_stripe_value(period, "end"))
            if bounds:
                return bounds
        return _period(get_stripe_value(invoice, "period_start"), get_stripe_value(invoice, "period_end"))


def _period(start: Any, end: Any) -> Optional[Tuple[datetime, datetime]]:
    start_dt = stripe_timestamp_to_datetime(start)
    end_dt = stripe_timestamp_to_datetime(end)
    if start_dt is None or end_dt is None or end_dt <= start_dt:
        return None
    return start_dt.astimezone(UTC), end_dt.astimezone(UTC)
