"""
quotacycle/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (trial, pay-per-request, starter, professional, enterprise)
- Plan lookup by id and by market
- Resolution of the market's default and pay-per-request plans
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol
from sqlalchemy import select, insert, update

from quotacycle.core.config import settings
from quotacycle.core.database import get_db_session, pricing_plans
from quotacycle.core.errors import NotFoundError
from quotacycle.models.plan import PricingPlan


# Default plan configurations, per market
DEFAULT_PLANS: Dict[str, Dict[str, Any]] = {
    "trial": {
        "name": "Free Trial",
        "price_per_month": Decimal("0"),
        "monthly_quota": 20,
        "trial_period_days": 7,
    },
    "pay_per_request": {
        "name": "Pay-per-Request",
        "price_per_request": Decimal("0.05"),
    },
    "starter": {
        "name": "Starter",
        "price_per_month": Decimal("29.99"),
        "monthly_quota": 1000,
        "allows_overflow": True,
    },
    "professional": {
        "name": "Professional",
        "price_per_month": Decimal("79.99"),
        "monthly_quota": 5000,
        "allows_overflow": True,
    },
    "enterprise": {
        "name": "Enterprise",
        "price_per_month": Decimal("199.99"),
        "monthly_quota": None,  # unlimited
    },
}


class PlanCatalog(Protocol):
    def get_plan(self, plan_id: str) -> PricingPlan:
        ...

    def get_default_plan(self, market: str) -> Optional[PricingPlan]:
        ...

    def find_pay_per_request_plan(self, market: str) -> Optional[PricingPlan]:
        ...

    def find_trial_plan(self, market: str) -> Optional[PricingPlan]:
        ...


def _row_to_plan(row) -> PricingPlan:
    return PricingPlan(
        plan_id=row.plan_id,
        name=row.name,
        market=row.market,
        currency=row.currency,
        price_per_month=row.price_per_month,
        price_per_request=row.price_per_request,
        monthly_quota=row.monthly_quota,
        trial_period_days=row.trial_period_days,
        cycle_length_days=row.cycle_length_days,
        allows_overflow=bool(row.allows_overflow),
        is_default=bool(row.is_default),
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _plan_values(plan: PricingPlan) -> Dict[str, Any]:
    return plan.model_dump(exclude={"created_at"})


def seed_plans(market: Optional[str] = None) -> List[PricingPlan]:
    """
    Seed default plans for a market (idempotent).

    Plan ids are suffixed with the market unless it is the default market,
    so several markets can carry their own prices.
    Safe to call multiple times.
    """
    market = market or settings.DEFAULT_MARKET
    seeded = []

    with get_db_session() as session:
        for base_id, config in DEFAULT_PLANS.items():
            plan_id = base_id if market == settings.DEFAULT_MARKET else f"{base_id}_{market.lower()}"
            existing = session.execute(
                select(pricing_plans.c.plan_id).where(pricing_plans.c.plan_id == plan_id)
            ).first()
            if existing:
                continue

            plan = PricingPlan(plan_id=plan_id, market=market, **config)
            session.execute(insert(pricing_plans).values(**_plan_values(plan)))
            seeded.append(plan)

    return seeded


def upsert_plan(plan: PricingPlan) -> PricingPlan:
    """Create or replace a plan definition."""
    values = _plan_values(plan)
    with get_db_session() as session:
        existing = session.execute(
            select(pricing_plans.c.plan_id).where(pricing_plans.c.plan_id == plan.plan_id)
        ).first()
        if existing:
            session.execute(
                update(pricing_plans)
                .where(pricing_plans.c.plan_id == plan.plan_id)
                .values(**values)
            )
        else:
            session.execute(insert(pricing_plans).values(**values))
    return get_plan(plan.plan_id)


def get_plan(plan_id: str) -> PricingPlan:
    """Get plan by ID.

    Raises:
        NotFoundError: If the plan doesn't exist
    """
    with get_db_session() as session:
        row = session.execute(
            select(pricing_plans).where(pricing_plans.c.plan_id == plan_id)
        ).first()

        if not row:
            raise NotFoundError(f"Pricing plan {plan_id} not found", context={"plan_id": plan_id})

        return _row_to_plan(row)


def list_active_plans(market: Optional[str] = None) -> List[PricingPlan]:
    """Active plans of a market, ordered by id."""
    market = market or settings.DEFAULT_MARKET
    with get_db_session() as session:
        rows = session.execute(
            select(pricing_plans)
            .where(pricing_plans.c.market == market)
            .where(pricing_plans.c.is_active == True)  # noqa: E712
            .order_by(pricing_plans.c.plan_id)
        ).all()
        return [_row_to_plan(row) for row in rows]


def get_default_plan(market: Optional[str] = None) -> Optional[PricingPlan]:
    """The market's non-trial default plan, if one is configured."""
    for plan in list_active_plans(market):
        if plan.is_default and not plan.is_trial_plan:
            return plan
    return None


def find_pay_per_request_plan(market: Optional[str] = None) -> Optional[PricingPlan]:
    """First active pay-per-request plan of the market."""
    for plan in list_active_plans(market):
        if plan.is_pay_per_request:
            return plan
    return None


def find_trial_plan(market: Optional[str] = None) -> Optional[PricingPlan]:
    """First active trial plan of the market."""
    for plan in list_active_plans(market):
        if plan.is_trial_plan:
            return plan
    return None


class SqlPlanCatalog:
    """PlanCatalog backed by the pricing_plans table."""

    def get_plan(self, plan_id: str) -> PricingPlan:
        return get_plan(plan_id)

    def get_default_plan(self, market: str) -> Optional[PricingPlan]:
        return get_default_plan(market)

    def find_pay_per_request_plan(self, market: str) -> Optional[PricingPlan]:
        return find_pay_per_request_plan(market)

    def find_trial_plan(self, market: str) -> Optional[PricingPlan]:
        return find_trial_plan(market)
