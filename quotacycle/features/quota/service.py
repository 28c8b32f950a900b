"""
quotacycle/features/quota/service.py

Request-time quota gate.

Handles:
- Allow / allow at pay-per-request price / deny decision per organization
- Fail-open policy when the organization cannot be resolved
- Enforcement helper raising the distinct denial errors
- Structured logs only (decisions are never persisted here)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from quotacycle.core.clock import Clock, SystemClock, normalize_now
from quotacycle.core.config import settings
from quotacycle.core.errors import (
    DataIntegrityError,
    NotFoundError,
    OrganizationDisabledError,
    QuotaExceededError,
    TrialExpiredError,
    ValidationError,
)
from quotacycle.features.organizations.repository import OrganizationRepository
from quotacycle.features.plans.service import PlanCatalog
from quotacycle.features.usage.service import UsageCounter, calendar_month_window, cycle_window_bounds
from quotacycle.models.organization import Organization
from quotacycle.models.plan import PricingPlan


logger = logging.getLogger(__name__)


class QuotaStatus(str, Enum):
    """Outcome of a quota check."""
    ALLOW = "ALLOW"
    ALLOW_PAY_PER_REQUEST = "ALLOW_PAY_PER_REQUEST"
    DENY_QUOTA_EXCEEDED = "DENY_QUOTA_EXCEEDED"
    DENY_TRIAL_EXPIRED = "DENY_TRIAL_EXPIRED"
    DENY_DISABLED = "DENY_DISABLED"


@dataclass(frozen=True)
class QuotaCheckResult:
    status: QuotaStatus
    quota_ok: bool
    can_use_pay_per_request: bool
    pay_per_request_price: Optional[Decimal]
    current_usage: Optional[int]
    monthly_quota: Optional[int]
    plan_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    # Allowed only because the organization could not be resolved
    fail_open: bool = False

    @property
    def allowed(self) -> bool:
        return self.status in (QuotaStatus.ALLOW, QuotaStatus.ALLOW_PAY_PER_REQUEST)


def usage_window(org: Organization, now: datetime) -> Tuple[datetime, datetime]:
    """Counting window: the current cycle, or the calendar month off-cycle.

    The upper bound never passes `now`, so a lapsed cycle the daily advance
    has not rolled over yet does not absorb the next cycle's requests.
    """
    now = normalize_now(now)
    if org.is_on_cycle:
        start, end = cycle_window_bounds(org.monthly_plan_start_date, org.monthly_plan_end_date)
    else:
        start, end = calendar_month_window(now)
    return start, min(end, now)


class QuotaEnforcer:
    """Decides whether an organization may consume one more billable request.

    Pure decision: nothing is written. The caller records usage once the
    request has been served.
    """

    def __init__(
        self,
        repository: OrganizationRepository,
        usage_counter: UsageCounter,
        catalog: PlanCatalog,
        clock: Optional[Clock] = None,
        fail_open: Optional[bool] = None,
    ):
        self.repository = repository
        self.usage_counter = usage_counter
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.fail_open = settings.QUOTA_FAIL_OPEN if fail_open is None else fail_open

    def _unresolved(self, organization_id: Optional[str], reason: str) -> QuotaCheckResult:
        logger.warning(
            "[quota] FAIL_OPEN",
            extra={"organization_id": organization_id, "reason": reason},
        )
        return QuotaCheckResult(
            status=QuotaStatus.ALLOW,
            quota_ok=True,
            can_use_pay_per_request=False,
            pay_per_request_price=None,
            current_usage=None,
            monthly_quota=None,
            fail_open=True,
        )

    def check_quota(self, organization_id: Optional[str]) -> QuotaCheckResult:
        """Look the organization up and decide.

        A missing id, an unknown organization or a repository failure is
        allowed when fail-open is configured (QUOTA_FAIL_OPEN, on by default):
        availability of the metered API wins over strict quota accounting
        while billing storage is unhealthy. With fail-open off those cases
        raise instead.
        """
        if not organization_id:
            if self.fail_open:
                return self._unresolved(organization_id, "missing_organization_id")
            raise ValidationError("organization_id is required")

        try:
            org = self.repository.find_organization(organization_id)
            return self.evaluate(org, self.clock.now())
        except NotFoundError:
            if not self.fail_open:
                raise
            return self._unresolved(organization_id, "not_found")
        except (DataIntegrityError, SQLAlchemyError) as exc:
            if not self.fail_open:
                raise
            logger.error(
                "[quota] lookup failed",
                extra={"organization_id": organization_id, "error": str(exc)},
            )
            return self._unresolved(organization_id, "repository_failure")

    def _overflow_price(self, org: Organization, plan: Optional[PricingPlan]) -> Optional[Decimal]:
        """Pay-per-request price applicable past the quota, None if overflow is not allowed."""
        pending = org.pending_pay_per_request_change
        if pending is not None:
            return self.catalog.get_plan(pending.plan_id).price_per_request
        if plan is None or not plan.allows_overflow:
            return None
        fallback = self.catalog.find_pay_per_request_plan(org.market)
        return fallback.price_per_request if fallback else None

    def evaluate(self, org: Organization, now: Optional[datetime] = None) -> QuotaCheckResult:
        """Decide for an already loaded organization at instant `now`."""
        now = normalize_now(now)
        if not org.enabled:
            logger.warning("[quota] DENY_DISABLED", extra={"organization_id": org.id})
            return QuotaCheckResult(
                status=QuotaStatus.DENY_DISABLED,
                quota_ok=False,
                can_use_pay_per_request=False,
                pay_per_request_price=None,
                current_usage=None,
                monthly_quota=org.monthly_quota,
                plan_id=org.pricing_plan_id,
            )

        plan = self.catalog.get_plan(org.pricing_plan_id) if org.pricing_plan_id else None
        window_start, window_end = usage_window(org, now)
        current_usage = self.usage_counter.count_billable_requests(org.id, window_start, window_end)
        common = dict(
            current_usage=current_usage,
            monthly_quota=org.monthly_quota,
            plan_id=org.pricing_plan_id,
            window_start=window_start,
            window_end=window_end,
        )

        # Expired but not yet advanced by the daily job
        if org.trial_expires_at is not None and normalize_now(org.trial_expires_at) <= now:
            logger.warning(
                "[quota] DENY_TRIAL_EXPIRED",
                extra={"organization_id": org.id, "trial_expires_at": org.trial_expires_at.isoformat()},
            )
            return QuotaCheckResult(
                status=QuotaStatus.DENY_TRIAL_EXPIRED,
                quota_ok=False,
                can_use_pay_per_request=False,
                pay_per_request_price=None,
                **common,
            )

        if plan is not None and plan.is_pay_per_request:
            return QuotaCheckResult(
                status=QuotaStatus.ALLOW,
                quota_ok=True,
                can_use_pay_per_request=False,
                pay_per_request_price=plan.price_per_request,
                **common,
            )

        if org.monthly_quota is None or current_usage < org.monthly_quota:
            return QuotaCheckResult(
                status=QuotaStatus.ALLOW,
                quota_ok=True,
                can_use_pay_per_request=False,
                pay_per_request_price=None,
                **common,
            )

        price = self._overflow_price(org, plan)
        if price is not None:
            logger.info(
                "[quota] ALLOW_PAY_PER_REQUEST",
                extra={
                    "organization_id": org.id,
                    "current_usage": current_usage,
                    "monthly_quota": org.monthly_quota,
                    "price": str(price),
                },
            )
            return QuotaCheckResult(
                status=QuotaStatus.ALLOW_PAY_PER_REQUEST,
                quota_ok=False,
                can_use_pay_per_request=True,
                pay_per_request_price=price,
                **common,
            )

        logger.warning(
            "[quota] DENY_QUOTA_EXCEEDED",
            extra={
                "organization_id": org.id,
                "current_usage": current_usage,
                "monthly_quota": org.monthly_quota,
            },
        )
        return QuotaCheckResult(
            status=QuotaStatus.DENY_QUOTA_EXCEEDED,
            quota_ok=False,
            can_use_pay_per_request=False,
            pay_per_request_price=None,
            **common,
        )

    def enforce_quota(self, organization_id: Optional[str]) -> QuotaCheckResult:
        """
        Check quota and raise when the request must be refused.

        Raises:
            OrganizationDisabledError: Organization switched off
            TrialExpiredError: Trial ended and no plan replaced it yet
            QuotaExceededError: Quota used up without pay-per-request overflow
        """
        result = self.check_quota(organization_id)
        context = {
            "organization_id": organization_id,
            "current_usage": result.current_usage,
            "monthly_quota": result.monthly_quota,
        }
        if result.status == QuotaStatus.DENY_DISABLED:
            raise OrganizationDisabledError(f"Organization {organization_id} is disabled", context=context)
        if result.status == QuotaStatus.DENY_TRIAL_EXPIRED:
            raise TrialExpiredError(f"Trial of organization {organization_id} has expired", context=context)
        if result.status == QuotaStatus.DENY_QUOTA_EXCEEDED:
            raise QuotaExceededError(
                f"Monthly quota of {result.monthly_quota} requests reached "
                f"({result.current_usage} used)",
                context=context,
            )
        return result
