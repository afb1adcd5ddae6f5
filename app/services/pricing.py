"""Price and proration calculations.

Pure functions, no database access. Amounts are ``Decimal`` rounded half-up
to cents.
"""

import calendar
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from app.models.subscription_enums import BillingPeriod
from app.utils.exceptions import ValidationException

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Round an amount to cents, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def yearly_price(monthly_price: Number, discount_rate: Number) -> Optional[Decimal]:
    """Yearly price: twelve months minus the yearly discount.

    Free plans have no yearly option and return None.
    """
    monthly = Decimal(str(monthly_price))
    if monthly == 0:
        return None
    rate = Decimal(str(discount_rate))
    return to_money(monthly * 12 * (1 - rate))


def period_price(monthly_price: Number, discount_rate: Number, billing_period: BillingPeriod) -> Decimal:
    """Price charged for one billing period of a plan."""
    if billing_period == BillingPeriod.MONTHLY:
        return to_money(monthly_price)
    price = yearly_price(monthly_price, discount_rate)
    if price is None:
        raise ValidationException("Free plans cannot be billed yearly")
    return price


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_end(start: datetime, billing_period: BillingPeriod) -> datetime:
    """End of a coverage period starting at ``start``."""
    if billing_period == BillingPeriod.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def upgrade_credit(
    current_period_price: Number,
    period_start: Optional[datetime],
    period_end_at: Optional[datetime],
    now: datetime,
) -> Decimal:
    """Unused share of the current period's price.

    ``remaining_days / period_days * price``, counting whole remaining days,
    clamped to ``[0, price]``.
    """
    if period_start is None or period_end_at is None:
        return ZERO
    period_days = (period_end_at - period_start).days
    if period_days <= 0 or now >= period_end_at:
        return ZERO
    remaining_days = min(max((period_end_at - now).days, 0), period_days)
    price = Decimal(str(current_period_price))
    credit = to_money(price * remaining_days / period_days)
    return min(max(credit, ZERO), to_money(price))


def first_charge(new_period_price: Number, credit: Number) -> Decimal:
    """Amount due for the first period of a new plan after applying a credit."""
    due = to_money(new_period_price) - to_money(credit)
    return due if due > ZERO else ZERO
