"""Billing cycle date arithmetic."""

import calendar
from datetime import date, timedelta
from typing import Optional, Tuple

from quotacycle.models.plan import PricingPlan


def add_months(value: date, months: int) -> date:
    """Same day `months` later, clamped to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def cycle_end_for(start: date, plan: Optional[PricingPlan]) -> date:
    """Inclusive last day of a cycle starting on `start`.

    Plans without an explicit cycle length run one calendar month:
    Jan 15 -> Feb 14, Jan 31 -> Feb 27 (28 in leap years).
    """
    if plan is not None and plan.cycle_length_days:
        return start + timedelta(days=plan.cycle_length_days - 1)
    return add_months(start, 1) - timedelta(days=1)


def open_cycle(start: date, plan: Optional[PricingPlan]) -> Tuple[date, date]:
    return start, cycle_end_for(start, plan)


def next_cycle(previous_end: date, plan: Optional[PricingPlan]) -> Tuple[date, date]:
    """The cycle immediately following one that ended on `previous_end`."""
    return open_cycle(previous_end + timedelta(days=1), plan)


def day_after(value: date) -> date:
    return value + timedelta(days=1)
