"""
quotacycle/models/organization.py

Organization aggregate and its scheduled-change value type.

Scheduled plan changes are modelled as Optional[PendingChange]: None means
no pending change, otherwise the plan id and its effective date travel
together, so one can never be set without the other.
"""

from datetime import date, datetime
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, model_validator


class PendingChange(BaseModel):
    """A plan change that takes effect once `effective_date` is reached."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    effective_date: date
    scheduled_on: Optional[date] = None

    @model_validator(mode="after")
    def _effective_not_before_scheduled(self) -> "PendingChange":
        if self.scheduled_on is not None and self.effective_date < self.scheduled_on:
            raise ValueError(
                f"pending change effective {self.effective_date} precedes scheduling date {self.scheduled_on}"
            )
        return self

    def is_due(self, today: date) -> bool:
        return self.effective_date <= today

    @property
    def is_immediate(self) -> bool:
        """Scheduled to take effect the same day it was requested."""
        return self.scheduled_on is not None and self.effective_date == self.scheduled_on


class Organization(BaseModel):
    """
    Organization represents a tenant consuming the metered API.

    `version` is the optimistic concurrency token; every successful save
    increments it.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    market: str = "DEFAULT"
    enabled: bool = True
    monthly_quota: Optional[int] = None
    pricing_plan_id: Optional[str] = None
    trial_expires_at: Optional[datetime] = None
    trial_permanently_expired: bool = False
    monthly_plan_start_date: Optional[date] = None
    monthly_plan_end_date: Optional[date] = None
    pending_monthly_change: Optional[PendingChange] = None
    pending_pay_per_request_change: Optional[PendingChange] = None
    last_pay_per_request_invoice_date: Optional[date] = None
    version: int = 0
    created_at: Optional[datetime] = None

    @property
    def is_on_trial(self) -> bool:
        return self.trial_expires_at is not None

    @property
    def is_on_cycle(self) -> bool:
        return self.monthly_plan_start_date is not None and self.monthly_plan_end_date is not None

    @property
    def cycle_window(self) -> Optional[Tuple[date, date]]:
        if not self.is_on_cycle:
            return None
        return self.monthly_plan_start_date, self.monthly_plan_end_date

    def state_dump(self) -> dict:
        """Full state for integrity logs."""
        return self.model_dump(mode="json")
