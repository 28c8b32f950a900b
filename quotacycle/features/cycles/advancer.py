"""
quotacycle/features/cycles/advancer.py

Time-driven plan state transitions.

advance_organization(org, today, catalog) is a pure function of its inputs
(plus read-only catalog lookups). Rules run in a fixed order every pass:

1. trial expiry
2. pending monthly plan activation
3. cycle rollover (only when no pending change applies this pass)
4. pending pay-per-request activation

Later rules rely on earlier ones having resolved trial and cycle state for
the same `today`. Re-running with the same `today` changes nothing.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from quotacycle.core.clock import normalize_now
from quotacycle.core.errors import DataIntegrityError, NotFoundError
from quotacycle.features.cycles.dates import day_after, next_cycle, open_cycle
from quotacycle.features.plans.service import PlanCatalog
from quotacycle.models.organization import Organization
from quotacycle.models.plan import PricingPlan


class Transition(str, Enum):
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    MONTHLY_PLAN_ACTIVATED = "MONTHLY_PLAN_ACTIVATED"
    CYCLE_RENEWED = "CYCLE_RENEWED"
    PAY_PER_REQUEST_ACTIVATED = "PAY_PER_REQUEST_ACTIVATED"


@dataclass(frozen=True)
class TransitionRecord:
    kind: Transition
    effective_date: date
    from_plan_id: Optional[str] = None
    to_plan_id: Optional[str] = None
    # Cycle closed by this transition; what an invoicing collaborator bills
    closed_window: Optional[Tuple[date, date]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_event(self, actor: str = "system_job") -> Dict[str, Any]:
        return {
            "actor": actor,
            "action": f"cycle.{self.kind.value.lower()}",
            "from_plan_id": self.from_plan_id,
            "to_plan_id": self.to_plan_id,
            "effective_date": self.effective_date,
            "window_start": self.closed_window[0] if self.closed_window else None,
            "window_end": self.closed_window[1] if self.closed_window else None,
            "payload": self.details or None,
        }


@dataclass(frozen=True)
class AdvanceOutcome:
    organization: Organization
    transitions: Tuple[TransitionRecord, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.transitions)


def _lookup(catalog: PlanCatalog, org: Organization, plan_id: str, role: str) -> PricingPlan:
    try:
        return catalog.get_plan(plan_id)
    except NotFoundError as exc:
        raise DataIntegrityError(
            f"Organization {org.id} references unknown {role} plan {plan_id}",
            context={"organization_id": org.id, "plan_id": plan_id, "role": role},
        ) from exc


def check_integrity(org: Organization, catalog: PlanCatalog) -> None:
    """Fail fast on states the scheduling paths can never produce."""
    start, end = org.monthly_plan_start_date, org.monthly_plan_end_date
    if (start is None) != (end is None):
        raise DataIntegrityError(
            f"Organization {org.id} has a half-set billing cycle (start={start}, end={end})",
            context={"organization_id": org.id},
        )
    if start is not None and end < start:
        raise DataIntegrityError(
            f"Organization {org.id} cycle ends {end} before it starts {start}",
            context={"organization_id": org.id},
        )
    if org.trial_permanently_expired and org.trial_expires_at is not None:
        raise DataIntegrityError(
            f"Organization {org.id} is on a trial although its trial is permanently expired",
            context={"organization_id": org.id},
        )
    if org.pricing_plan_id is not None:
        _lookup(catalog, org, org.pricing_plan_id, "current")
    if org.pending_monthly_change is not None:
        _lookup(catalog, org, org.pending_monthly_change.plan_id, "pending monthly")
    if org.pending_pay_per_request_change is not None:
        _lookup(catalog, org, org.pending_pay_per_request_change.plan_id, "pending pay-per-request")


def adopt_plan(org: Organization, plan: PricingPlan, today: date) -> Organization:
    """Make `plan` the plan in effect from `today`; pending changes untouched."""
    if plan.is_monthly:
        start, end = open_cycle(today, plan)
    else:
        start, end = None, None
    return org.model_copy(update={
        "pricing_plan_id": plan.plan_id,
        "monthly_quota": plan.monthly_quota,
        "monthly_plan_start_date": start,
        "monthly_plan_end_date": end,
    })


def _end_trial(org: Organization) -> Organization:
    """Leaving a trial for any plan burns it; no-op off trial."""
    if not org.is_on_trial:
        return org
    return org.model_copy(update={"trial_expires_at": None, "trial_permanently_expired": True})


def apply_plan_immediately(
    org: Organization,
    plan: PricingPlan,
    today: date,
    now: Optional[datetime] = None,
) -> Organization:
    """Replace every plan parameter with `plan`'s and drop pending changes.

    Entering a trial starts its clock; leaving one ends the trial for good.
    """
    updated = adopt_plan(org, plan, today)
    changes: Dict[str, Any] = {
        "pending_monthly_change": None,
        "pending_pay_per_request_change": None,
    }
    if plan.is_trial_plan:
        started = normalize_now(now) if now else datetime.combine(today, time.min, tzinfo=timezone.utc)
        changes["trial_expires_at"] = started + timedelta(days=plan.trial_period_days)
        return updated.model_copy(update=changes)
    return _end_trial(updated).model_copy(update=changes)


def _expire_trial(
    org: Organization, today: date, catalog: PlanCatalog, transitions: List[TransitionRecord]
) -> Organization:
    if org.trial_expires_at is None or normalize_now(org.trial_expires_at).date() > today:
        return org

    default_plan = catalog.get_default_plan(org.market)
    if default_plan is not None:
        updated = adopt_plan(org, default_plan, today)
    else:
        # No plan left: a zero quota with no overflow denies every request
        updated = org.model_copy(update={
            "pricing_plan_id": None,
            "monthly_quota": 0,
            "monthly_plan_start_date": None,
            "monthly_plan_end_date": None,
        })
    updated = updated.model_copy(update={
        "trial_expires_at": None,
        "trial_permanently_expired": True,
    })
    transitions.append(TransitionRecord(
        kind=Transition.TRIAL_EXPIRED,
        effective_date=today,
        from_plan_id=org.pricing_plan_id,
        to_plan_id=updated.pricing_plan_id,
        details={"trial_expires_at": normalize_now(org.trial_expires_at).isoformat()},
    ))
    return updated


def _activate_pending_monthly(
    org: Organization, today: date, catalog: PlanCatalog, transitions: List[TransitionRecord]
) -> Tuple[Organization, bool]:
    pending = org.pending_monthly_change
    if pending is None or not pending.is_due(today):
        return org, False

    plan = _lookup(catalog, org, pending.plan_id, "pending monthly")
    updated = adopt_plan(org, plan, today)
    if not plan.is_monthly:
        # A non-cycle plan still opens a cycle from the activation date
        start, end = open_cycle(today, plan)
        updated = updated.model_copy(update={"monthly_plan_start_date": start, "monthly_plan_end_date": end})
    updated = _end_trial(updated).model_copy(update={"pending_monthly_change": None})
    transitions.append(TransitionRecord(
        kind=Transition.MONTHLY_PLAN_ACTIVATED,
        effective_date=today,
        from_plan_id=org.pricing_plan_id,
        to_plan_id=plan.plan_id,
        closed_window=org.cycle_window,
        details={"scheduled_for": pending.effective_date.isoformat()},
    ))
    return updated, True


def _roll_over_cycle(
    org: Organization, today: date, catalog: PlanCatalog, transitions: List[TransitionRecord]
) -> Organization:
    if org.monthly_plan_end_date is None or org.monthly_plan_end_date >= today:
        return org

    plan = _lookup(catalog, org, org.pricing_plan_id, "current") if org.pricing_plan_id else None
    start, end = org.monthly_plan_start_date, org.monthly_plan_end_date
    # Catch up over every lapsed cycle so a second pass has nothing left to do
    while end < today:
        new_start, new_end = next_cycle(end, plan)
        transitions.append(TransitionRecord(
            kind=Transition.CYCLE_RENEWED,
            effective_date=new_start,
            from_plan_id=org.pricing_plan_id,
            to_plan_id=org.pricing_plan_id,
            closed_window=(start, end),
        ))
        start, end = new_start, new_end

    changes: Dict[str, Any] = {"monthly_plan_start_date": start, "monthly_plan_end_date": end}
    if plan is not None:
        changes["monthly_quota"] = plan.monthly_quota
    return org.model_copy(update=changes)


def _activate_pending_pay_per_request(
    org: Organization,
    today: date,
    catalog: PlanCatalog,
    transitions: List[TransitionRecord],
    quota_exhausted: bool,
) -> Organization:
    pending = org.pending_pay_per_request_change
    if pending is None:
        return org
    if not (pending.is_due(today) or quota_exhausted):
        return org

    plan = _lookup(catalog, org, pending.plan_id, "pending pay-per-request")
    if org.last_pay_per_request_invoice_date is not None:
        invoice_from = day_after(org.last_pay_per_request_invoice_date)
    else:
        invoice_from = org.monthly_plan_start_date or today

    updated = _end_trial(adopt_plan(org, plan, today)).model_copy(update={
        "pending_monthly_change": None,
        "pending_pay_per_request_change": None,
        "last_pay_per_request_invoice_date": invoice_from,
    })
    transitions.append(TransitionRecord(
        kind=Transition.PAY_PER_REQUEST_ACTIVATED,
        effective_date=today,
        from_plan_id=org.pricing_plan_id,
        to_plan_id=plan.plan_id,
        closed_window=org.cycle_window,
        details={
            "scheduled_for": pending.effective_date.isoformat(),
            "quota_exhausted": quota_exhausted,
            "invoice_from": invoice_from.isoformat(),
        },
    ))
    return updated


def advance_organization(
    org: Organization,
    today: date,
    catalog: PlanCatalog,
    *,
    quota_exhausted: bool = False,
) -> AdvanceOutcome:
    """Apply every transition due on `today`.

    Args:
        org: Current organization state
        today: Business date of the pass
        catalog: Plan lookups (cycle length, default plan, pending targets)
        quota_exhausted: The organization's quota is used up right now; a
            pending pay-per-request fallback activates without waiting for
            its date.

    Raises:
        DataIntegrityError: Malformed stored state (see check_integrity)
    """
    check_integrity(org, catalog)

    transitions: List[TransitionRecord] = []
    current = _expire_trial(org, today, catalog, transitions)
    current, activated = _activate_pending_monthly(current, today, catalog, transitions)
    pending_ppr = current.pending_pay_per_request_change
    # A cycle ending into pay-per-request is closed by rule 4, not renewed
    switching = pending_ppr is not None and (pending_ppr.is_due(today) or quota_exhausted)
    if not activated and not switching:
        current = _roll_over_cycle(current, today, catalog, transitions)
    current = _activate_pending_pay_per_request(current, today, catalog, transitions, quota_exhausted)

    return AdvanceOutcome(organization=current, transitions=tuple(transitions))
