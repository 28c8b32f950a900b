"""
quotacycle/features/lifecycle/service.py

Organization lifecycle orchestration.

Handles:
- Registration (fresh trial or chosen plan)
- User-driven plan changes: immediate or scheduled at the cycle boundary
- Pay-per-request fallback scheduling (immediate when the quota is used up)
- Daily advance over every organization with due work, isolated per item
- Optimistic read-modify-write with bounded retries on version conflicts
"""

from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from quotacycle.core.clock import Clock, SystemClock, normalize_now
from quotacycle.core.config import settings
from quotacycle.core.errors import (
    AppError,
    ConflictError,
    DataIntegrityError,
    TrialAlreadyUsedError,
    ValidationError,
)
from quotacycle.core.logging import log_event
from quotacycle.features.cycles.advancer import (
    AdvanceOutcome,
    TransitionRecord,
    advance_organization,
    apply_plan_immediately,
)
from quotacycle.features.cycles.dates import day_after
from quotacycle.features.organizations.repository import OrganizationRepository
from quotacycle.features.plans.service import PlanCatalog
from quotacycle.features.quota.service import QuotaEnforcer, QuotaStatus
from quotacycle.features.usage.service import UsageCounter
from quotacycle.models.organization import Organization, PendingChange
from quotacycle.models.plan import PricingPlan


logger = logging.getLogger(__name__)

Mutation = Callable[[Organization], Tuple[Organization, List[Dict[str, Any]]]]


def _plan_event(action: str, before: Organization, after: Organization, **payload: Any) -> Dict[str, Any]:
    pending = after.pending_monthly_change or after.pending_pay_per_request_change
    return {
        "actor": "user",
        "action": action,
        "from_plan_id": before.pricing_plan_id,
        "to_plan_id": pending.plan_id if pending else after.pricing_plan_id,
        "effective_date": pending.effective_date if pending else None,
        "payload": payload or None,
    }


class OrganizationLifecycle:
    """Schedules plan transitions and drives the daily cycle advance."""

    def __init__(
        self,
        repository: OrganizationRepository,
        catalog: PlanCatalog,
        usage_counter: UsageCounter,
        clock: Optional[Clock] = None,
        *,
        enforcer: Optional[QuotaEnforcer] = None,
        max_conflict_retries: Optional[int] = None,
        batch_limit: Optional[int] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.usage_counter = usage_counter
        self.clock = clock or SystemClock()
        self.enforcer = enforcer or QuotaEnforcer(repository, usage_counter, catalog, self.clock)
        self.max_conflict_retries = max_conflict_retries or settings.ADVANCE_CONFLICT_MAX_RETRIES
        self.batch_limit = batch_limit or settings.ADVANCE_BATCH_LIMIT

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return normalize_now(self.clock.now())

    def _now_for(self, today: date) -> datetime:
        """The clock's instant if it falls on `today`, else the end of `today`."""
        now = self._now()
        if now.date() == today:
            return now
        return datetime.combine(today, time.max, tzinfo=timezone.utc)

    def _mutate(self, organization_id: str, mutation: Mutation) -> Organization:
        """Read, transform and save one organization, retrying on version conflicts.

        `mutation` returns the new state plus the audit events to store with
        it; returning the organization unchanged with no events skips the save.
        """
        attempt = 0
        while True:
            attempt += 1
            org = self.repository.find_organization(organization_id)
            updated, events = mutation(org)
            if updated == org and not events:
                return org
            try:
                return self.repository.save(updated, events)
            except ConflictError:
                if attempt >= self.max_conflict_retries:
                    logger.error(
                        "[lifecycle] conflict retries exhausted",
                        extra={"organization_id": organization_id, "attempts": attempt},
                    )
                    raise
                logger.info(
                    "[lifecycle] version conflict, retrying",
                    extra={"organization_id": organization_id, "attempt": attempt},
                )

    def _load_plan(self, plan_id: str, market: str) -> PricingPlan:
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError(f"Pricing plan {plan_id} is not available", context={"plan_id": plan_id})
        if plan.market != market:
            raise ValidationError(
                f"Pricing plan {plan_id} belongs to market {plan.market}, not {market}",
                context={"plan_id": plan_id, "market": market},
            )
        return plan

    def _quota_exhausted(self, org: Organization, now: datetime) -> bool:
        result = self.enforcer.evaluate(org, now)
        return result.status in (QuotaStatus.DENY_QUOTA_EXCEEDED, QuotaStatus.ALLOW_PAY_PER_REQUEST)

    def _boundary_after_cycle(self, org: Organization, today: date) -> date:
        # A lapsed cycle not yet rolled over must not yield a date in the past
        return max(day_after(org.monthly_plan_end_date), today)

    # ------------------------------------------------------------------
    # registration and plan changes
    # ------------------------------------------------------------------

    def register_organization(
        self,
        organization_id: str,
        market: Optional[str] = None,
        plan_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Organization:
        """
        Create an organization on a fresh trial, or on `plan_id` when given.

        Without a trial plan in the market, the market's default plan is
        used; with neither, the organization starts with no plan.

        Raises:
            ConflictError: Organization id already registered
            NotFoundError / ValidationError: Unknown or unusable plan
        """
        market = market or settings.DEFAULT_MARKET
        now = self._now()
        if plan_id:
            plan = self._load_plan(plan_id, market)
        else:
            plan = self.catalog.find_trial_plan(market) or self.catalog.get_default_plan(market)

        org = Organization(id=organization_id, name=name, market=market)
        if plan is not None:
            org = apply_plan_immediately(org, plan, now.date(), now)

        created = self.repository.create(org, [{
            "actor": "user",
            "action": "organization.registered",
            "to_plan_id": org.pricing_plan_id,
            "effective_date": now.date(),
            "window_start": org.monthly_plan_start_date,
            "window_end": org.monthly_plan_end_date,
        }])
        logger.info(
            "[lifecycle] organization registered",
            extra={"organization_id": organization_id, "plan_id": created.pricing_plan_id, "market": market},
        )
        return created

    def _schedule_pay_per_request(
        self, org: Organization, plan: PricingPlan, now: datetime
    ) -> Tuple[Organization, List[Dict[str, Any]]]:
        today = now.date()
        current = self.catalog.get_plan(org.pricing_plan_id) if org.pricing_plan_id else None
        if current is not None and current.is_pay_per_request:
            raise ValidationError(
                f"Organization {org.id} is already on pay-per-request pricing",
                context={"organization_id": org.id},
            )

        exhausted = self._quota_exhausted(org, now)
        if exhausted or not org.is_on_cycle:
            effective = today
        else:
            effective = self._boundary_after_cycle(org, today)

        updated = org.model_copy(update={
            "pending_pay_per_request_change": PendingChange(
                plan_id=plan.plan_id, effective_date=effective, scheduled_on=today
            ),
            "pending_monthly_change": None,
        })
        logger.info(
            "[lifecycle] pay-per-request fallback scheduled",
            extra={
                "organization_id": org.id,
                "plan_id": plan.plan_id,
                "effective_date": effective.isoformat(),
                "quota_exhausted": exhausted,
            },
        )
        return updated, [_plan_event("plan.pay_per_request_scheduled", org, updated, quota_exhausted=exhausted)]

    def schedule_plan_change(self, organization_id: str, new_plan_id: str) -> Organization:
        """
        Request a switch to `new_plan_id`.

        Trial entry, trial exit, pay-per-request exit and changes without a
        running cycle apply immediately. Monthly to monthly waits for the
        cycle boundary; monthly to pay-per-request follows the fallback rules.

        Raises:
            TrialAlreadyUsedError: Trial requested a second time
            ValidationError: Same plan, inactive plan or other market
            NotFoundError: Unknown organization or plan
        """
        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            now = self._now()
            today = now.date()
            new_plan = self._load_plan(new_plan_id, org.market)
            current = self.catalog.get_plan(org.pricing_plan_id) if org.pricing_plan_id else None

            if current is not None and current.plan_id == new_plan.plan_id:
                raise ValidationError(
                    f"Organization {org.id} is already on plan {new_plan_id}",
                    context={"organization_id": org.id, "plan_id": new_plan_id},
                )

            if new_plan.is_trial_plan:
                if org.trial_permanently_expired or org.is_on_trial:
                    raise TrialAlreadyUsedError(
                        f"Organization {org.id} has already used its trial",
                        context={"organization_id": org.id},
                    )
                updated = apply_plan_immediately(org, new_plan, today, now)
                return updated, [_plan_event("plan.changed", org, updated, mode="immediate")]

            if org.is_on_trial:
                updated = apply_plan_immediately(org, new_plan, today, now)
                return updated, [_plan_event("plan.changed", org, updated, mode="immediate", left_trial=True)]

            on_monthly_cycle = current is not None and current.is_monthly and org.is_on_cycle

            if on_monthly_cycle and new_plan.is_pay_per_request:
                return self._schedule_pay_per_request(org, new_plan, now)

            if on_monthly_cycle and new_plan.is_monthly:
                effective = self._boundary_after_cycle(org, today)
                updated = org.model_copy(update={
                    "pending_monthly_change": PendingChange(
                        plan_id=new_plan.plan_id, effective_date=effective, scheduled_on=today
                    ),
                    "pending_pay_per_request_change": None,
                })
                return updated, [_plan_event("plan.change_scheduled", org, updated)]

            updated = apply_plan_immediately(org, new_plan, today, now)
            if current is not None and current.is_pay_per_request and new_plan.is_monthly:
                # Pay-per-request usage is billed up to today; the cycle starts now
                updated = updated.model_copy(update={"last_pay_per_request_invoice_date": today})
            return updated, [_plan_event("plan.changed", org, updated, mode="immediate")]

        saved = self._mutate(organization_id, mutation)
        logger.info(
            "[lifecycle] plan change requested",
            extra={"organization_id": organization_id, "plan_id": new_plan_id},
        )
        return saved

    def schedule_fallback_to_pay_per_request(
        self, organization_id: str, plan_id: Optional[str] = None
    ) -> Organization:
        """
        Schedule the switch to pay-per-request pricing.

        Effective today when the quota is already used up (consumed by the
        next daily advance, overflow is billed meanwhile), otherwise on the
        day after the current cycle ends.

        Raises:
            ValidationError: Already on pay-per-request, or no such plan in the market
        """
        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            now = self._now()
            if plan_id:
                plan = self._load_plan(plan_id, org.market)
            else:
                plan = self.catalog.find_pay_per_request_plan(org.market)
                if plan is None:
                    raise ValidationError(
                        f"No pay-per-request plan in market {org.market}",
                        context={"organization_id": org.id, "market": org.market},
                    )
            if not plan.is_pay_per_request:
                raise ValidationError(
                    f"Pricing plan {plan.plan_id} is not a pay-per-request plan",
                    context={"plan_id": plan.plan_id},
                )
            return self._schedule_pay_per_request(org, plan, now)

        return self._mutate(organization_id, mutation)

    def cancel_pending_plan_change(self, organization_id: str) -> Organization:
        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            if org.pending_monthly_change is None:
                raise ValidationError(
                    f"Organization {org.id} has no pending plan change",
                    context={"organization_id": org.id},
                )
            updated = org.model_copy(update={"pending_monthly_change": None})
            return updated, [_plan_event(
                "plan.change_cancelled", org, updated, plan_id=org.pending_monthly_change.plan_id
            )]

        return self._mutate(organization_id, mutation)

    def cancel_pending_pay_per_request_change(self, organization_id: str) -> Organization:
        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            if org.pending_pay_per_request_change is None:
                raise ValidationError(
                    f"Organization {org.id} has no pending pay-per-request change",
                    context={"organization_id": org.id},
                )
            updated = org.model_copy(update={"pending_pay_per_request_change": None})
            return updated, [_plan_event(
                "plan.pay_per_request_cancelled", org, updated, plan_id=org.pending_pay_per_request_change.plan_id
            )]

        return self._mutate(organization_id, mutation)

    def _set_enabled(self, organization_id: str, enabled: bool) -> Organization:
        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            if org.enabled == enabled:
                state = "enabled" if enabled else "disabled"
                raise ValidationError(
                    f"Organization {org.id} is already {state}",
                    context={"organization_id": org.id},
                )
            updated = org.model_copy(update={"enabled": enabled})
            action = "organization.enabled" if enabled else "organization.disabled"
            return updated, [{"actor": "user", "action": action}]

        saved = self._mutate(organization_id, mutation)
        logger.info(
            "[lifecycle] organization %s", "enabled" if enabled else "disabled",
            extra={"organization_id": organization_id},
        )
        return saved

    def disable_organization(self, organization_id: str) -> Organization:
        return self._set_enabled(organization_id, False)

    def enable_organization(self, organization_id: str) -> Organization:
        return self._set_enabled(organization_id, True)

    # ------------------------------------------------------------------
    # daily advance
    # ------------------------------------------------------------------

    def advance_organization(self, organization_id: str, today: Optional[date] = None) -> AdvanceOutcome:
        """Apply every transition due for one organization and persist it.

        Raises:
            DataIntegrityError: Stored state is malformed (logged with a state dump)
            ConflictError: Concurrent edits outlasted the retry bound
        """
        today = today or self._now().date()
        transitions: List[TransitionRecord] = []

        def mutation(org: Organization) -> Tuple[Organization, List[Dict[str, Any]]]:
            quota_exhausted = False
            if org.pending_pay_per_request_change is not None:
                quota_exhausted = self._quota_exhausted(org, self._now_for(today))
            try:
                outcome = advance_organization(org, today, self.catalog, quota_exhausted=quota_exhausted)
            except DataIntegrityError as exc:
                log_event(
                    "error",
                    "[lifecycle] data integrity violation",
                    organization_id=org.id,
                    event_type="cycle.advance",
                    error_code=exc.code,
                    extra={"state": org.state_dump(), "error": exc.message},
                    limit=4000,
                )
                raise
            transitions[:] = outcome.transitions
            return outcome.organization, [t.as_event() for t in outcome.transitions]

        saved = self._mutate(organization_id, mutation)
        if transitions:
            logger.info(
                "[lifecycle] organization advanced",
                extra={
                    "organization_id": organization_id,
                    "transitions": [t.kind.value for t in transitions],
                    "plan_id": saved.pricing_plan_id,
                },
            )
        return AdvanceOutcome(organization=saved, transitions=tuple(transitions))

    def _due_organization_ids(self, today: date) -> Iterator[str]:
        """Every due id, read in keyset pages of `batch_limit`."""
        after_id: Optional[str] = None
        while True:
            page = self.repository.find_organizations_due_for_advance(
                today, limit=self.batch_limit, after_id=after_id
            )
            yield from page
            if not page or len(page) < self.batch_limit:
                return
            after_id = page[-1]

    def run_daily_advance(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Advance every organization with due work.

        Each organization is handled on its own: a failure is logged,
        recorded in `errors` and the batch continues. Candidates are read
        page by page so the batch limit bounds memory, not coverage.

        Returns:
            {"advanced", "unchanged", "errors": [{organization_id, error_code, message}], "run_date"}
        """
        now = normalize_now(now or self.clock.now())
        today = now.date()

        candidates = 0
        advanced = 0
        unchanged = 0
        errors: List[Dict[str, Any]] = []
        for organization_id in self._due_organization_ids(today):
            candidates += 1
            try:
                outcome = self.advance_organization(organization_id, today)
            except (AppError, SQLAlchemyError) as exc:
                code = exc.code if isinstance(exc, AppError) else "repository_failure"
                logger.error(
                    "[lifecycle] advance failed",
                    extra={"organization_id": organization_id, "error_code": code, "error": str(exc)},
                )
                errors.append({"organization_id": organization_id, "error_code": code, "message": str(exc)})
                continue
            except Exception as exc:
                logger.exception(
                    "[lifecycle] advance crashed",
                    extra={"organization_id": organization_id},
                )
                errors.append({"organization_id": organization_id, "error_code": "internal_error", "message": str(exc)})
                continue

            if outcome.changed:
                advanced += 1
            else:
                unchanged += 1

        logger.info(
            "[lifecycle] daily advance finished",
            extra={
                "run_date": today.isoformat(),
                "candidates": candidates,
                "advanced": advanced,
                "unchanged": unchanged,
                "errors": len(errors),
            },
        )
        return {
            "advanced": advanced,
            "unchanged": unchanged,
            "errors": errors,
            "run_date": today.isoformat(),
        }
