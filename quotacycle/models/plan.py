"""
quotacycle/models/plan.py

Pricing plan model.

A plan is exactly one of:
- trial (trial_period_days > 0): time-boxed, offered once per organization
- monthly (price_per_month > 0): quota accrues over a billing cycle
- pay-per-request (price_per_request > 0, no monthly price): no quota ceiling
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict


class PricingPlan(BaseModel):
    """
    PricingPlan describes how an organization is billed.

    cycle_length_days=None means one calendar month (day D to day D-1 of
    the following month, inclusive).
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    market: str = "DEFAULT"
    currency: str = "EUR"
    price_per_month: Optional[Decimal] = None
    price_per_request: Optional[Decimal] = None
    monthly_quota: Optional[int] = None
    trial_period_days: Optional[int] = None
    cycle_length_days: Optional[int] = None
    allows_overflow: bool = False
    is_default: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def is_trial_plan(self) -> bool:
        return bool(self.trial_period_days and self.trial_period_days > 0)

    @property
    def is_monthly(self) -> bool:
        return self.price_per_month is not None and self.price_per_month > 0

    @property
    def is_pay_per_request(self) -> bool:
        has_request_price = self.price_per_request is not None and self.price_per_request > 0
        return has_request_price and not self.is_monthly
