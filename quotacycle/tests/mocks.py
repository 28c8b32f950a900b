from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from quotacycle.core.errors import ConflictError, NotFoundError
from quotacycle.models.organization import Organization
from quotacycle.models.plan import PricingPlan


TRIAL = PricingPlan(plan_id="trial", name="Free Trial", price_per_month=Decimal("0"), monthly_quota=20, trial_period_days=7)
PAY_PER_REQUEST = PricingPlan(plan_id="pay_per_request", name="Pay-per-Request", price_per_request=Decimal("0.05"))
STARTER = PricingPlan(
    plan_id="starter", name="Starter", price_per_month=Decimal("29.99"), monthly_quota=1000, allows_overflow=True
)
PROFESSIONAL = PricingPlan(
    plan_id="professional", name="Professional", price_per_month=Decimal("79.99"), monthly_quota=5000
)
WEEKLY = PricingPlan(
    plan_id="weekly", name="Weekly", price_per_month=Decimal("9.99"), monthly_quota=100, cycle_length_days=7
)


class FakePlanCatalog:
    def __init__(self, plans: Iterable[PricingPlan] = (TRIAL, PAY_PER_REQUEST, STARTER, PROFESSIONAL, WEEKLY)):
        self.plans: Dict[str, PricingPlan] = {p.plan_id: p for p in plans}

    def get_plan(self, plan_id: str) -> PricingPlan:
        if plan_id not in self.plans:
            raise NotFoundError(f"Pricing plan {plan_id} not found")
        return self.plans[plan_id]

    def get_default_plan(self, market: str) -> Optional[PricingPlan]:
        for plan in self.plans.values():
            if plan.is_default and not plan.is_trial_plan and plan.market == market:
                return plan
        return None

    def find_pay_per_request_plan(self, market: str) -> Optional[PricingPlan]:
        for plan in self.plans.values():
            if plan.is_pay_per_request and plan.market == market:
                return plan
        return None

    def find_trial_plan(self, market: str) -> Optional[PricingPlan]:
        for plan in self.plans.values():
            if plan.is_trial_plan and plan.market == market:
                return plan
        return None


class FakeUsageCounter:
    def __init__(self, usage: int = 0):
        self.usage = usage
        self.calls: List[tuple] = []

    def count_billable_requests(self, organization_id, window_start, window_end) -> int:
        self.calls.append((organization_id, window_start, window_end))
        return self.usage


class ConflictingRepository:
    """Wraps a repository and fails the first `conflicts` saves with ConflictError."""

    def __init__(self, inner, conflicts: int = 1):
        self.inner = inner
        self.conflicts = conflicts
        self.save_attempts = 0

    def find_organization(self, organization_id: str) -> Organization:
        return self.inner.find_organization(organization_id)

    def find_organizations_due_for_advance(
        self, today: date, limit: Optional[int] = None, after_id: Optional[str] = None
    ) -> List[str]:
        return self.inner.find_organizations_due_for_advance(today, limit, after_id)

    def create(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        return self.inner.create(organization, events)

    def save(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        self.save_attempts += 1
        if self.save_attempts <= self.conflicts:
            raise ConflictError(f"Organization {organization.id} was modified concurrently")
        return self.inner.save(organization, events)
