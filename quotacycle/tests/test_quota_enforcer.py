"""Tests for the request-time quota gate."""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from quotacycle.core.clock import FixedClock
from quotacycle.core.errors import (
    NotFoundError,
    OrganizationDisabledError,
    QuotaExceededError,
    TrialExpiredError,
    ValidationError,
)
from quotacycle.features.quota.service import QuotaEnforcer, QuotaStatus, usage_window
from quotacycle.features.usage.service import record_billable_request
from quotacycle.models.organization import Organization, PendingChange
from quotacycle.tests.mocks import FakePlanCatalog, FakeUsageCounter


NOW = datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)


def _enforcer(usage: int = 0, **kwargs) -> QuotaEnforcer:
    return QuotaEnforcer(
        repository=MagicMock(),
        usage_counter=FakeUsageCounter(usage),
        catalog=FakePlanCatalog(),
        clock=FixedClock(NOW),
        **kwargs,
    )


def _org(**overrides) -> Organization:
    values = dict(
        id="org-1",
        pricing_plan_id="professional",
        monthly_quota=100,
        monthly_plan_start_date=date(2024, 1, 1),
        monthly_plan_end_date=date(2024, 1, 31),
    )
    values.update(overrides)
    return Organization(**values)


class TestDecision:
    def test_unlimited_quota_always_allows(self):
        enforcer = _enforcer(usage=10_000_000)
        result = enforcer.evaluate(_org(monthly_quota=None), NOW)
        assert result.status == QuotaStatus.ALLOW
        assert result.quota_ok is True

    @pytest.mark.parametrize("usage, expected", [(0, True), (99, True), (100, False), (150, False)])
    def test_quota_ok_iff_usage_below_quota(self, usage, expected):
        result = _enforcer(usage=usage).evaluate(_org(), NOW)
        assert result.quota_ok is expected
        assert result.current_usage == usage
        assert result.monthly_quota == 100

    def test_exhausted_quota_without_overflow_is_denied(self):
        result = _enforcer(usage=100).evaluate(_org(), NOW)
        assert result.status == QuotaStatus.DENY_QUOTA_EXCEEDED
        assert result.can_use_pay_per_request is False
        assert result.pay_per_request_price is None

    def test_exhausted_quota_with_overflow_plan_bills_per_request(self):
        result = _enforcer(usage=100).evaluate(_org(pricing_plan_id="starter"), NOW)
        assert result.status == QuotaStatus.ALLOW_PAY_PER_REQUEST
        assert result.quota_ok is False
        assert result.can_use_pay_per_request is True
        assert result.pay_per_request_price == Decimal("0.05")
        assert result.allowed is True

    def test_pending_pay_per_request_fallback_permits_overflow(self):
        org = _org(
            pending_pay_per_request_change=PendingChange(plan_id="pay_per_request", effective_date=date(2024, 1, 20))
        )
        result = _enforcer(usage=100).evaluate(org, NOW)
        assert result.status == QuotaStatus.ALLOW_PAY_PER_REQUEST
        assert result.pay_per_request_price == Decimal("0.05")

    def test_pay_per_request_plan_has_no_ceiling(self):
        org = _org(pricing_plan_id="pay_per_request", monthly_quota=5, monthly_plan_start_date=None, monthly_plan_end_date=None)
        result = _enforcer(usage=500).evaluate(org, NOW)
        assert result.status == QuotaStatus.ALLOW
        assert result.pay_per_request_price == Decimal("0.05")

    def test_disabled_organization_is_denied_before_counting(self):
        enforcer = _enforcer(usage=0)
        result = enforcer.evaluate(_org(enabled=False, monthly_quota=None), NOW)
        assert result.status == QuotaStatus.DENY_DISABLED
        assert result.allowed is False
        assert enforcer.usage_counter.calls == []

    def test_disabled_organization_is_denied_when_plan_lookup_fails(self):
        enforcer = _enforcer(usage=0)
        enforcer.catalog = MagicMock()
        enforcer.catalog.get_plan.side_effect = OperationalError("select", {}, Exception("db down"))

        result = enforcer.evaluate(_org(enabled=False), NOW)

        assert result.status == QuotaStatus.DENY_DISABLED
        assert result.fail_open is False
        enforcer.catalog.get_plan.assert_not_called()

    def test_expired_trial_is_denied_before_the_daily_advance(self):
        org = _org(
            pricing_plan_id="trial",
            monthly_quota=20,
            monthly_plan_start_date=None,
            monthly_plan_end_date=None,
            trial_expires_at=datetime(2024, 1, 20, 9, 0, tzinfo=timezone.utc),
        )
        result = _enforcer(usage=0).evaluate(org, NOW)
        assert result.status == QuotaStatus.DENY_TRIAL_EXPIRED


class TestUsageWindow:
    def test_cycle_window_is_bounded_by_now(self):
        start, end = usage_window(_org(), NOW)
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert end == NOW

    def test_lapsed_cycle_window_stops_at_cycle_end(self):
        start, end = usage_window(_org(), datetime(2024, 2, 2, tzinfo=timezone.utc))
        assert end.date() == date(2024, 1, 31)

    def test_off_cycle_uses_calendar_month(self):
        org = _org(monthly_plan_start_date=None, monthly_plan_end_date=None)
        start, end = usage_window(org, NOW)
        assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert end == NOW


class TestCheckQuota:
    def test_missing_organization_id_fails_open(self):
        result = _enforcer(fail_open=True).check_quota(None)
        assert result.status == QuotaStatus.ALLOW
        assert result.fail_open is True

    def test_unknown_organization_fails_open(self, enforcer):
        result = enforcer.check_quota("does-not-exist")
        assert result.allowed is True
        assert result.fail_open is True

    def test_unknown_organization_raises_when_fail_closed(self, repository, usage_counter, catalog, clock):
        strict = QuotaEnforcer(repository, usage_counter, catalog, clock, fail_open=False)
        with pytest.raises(NotFoundError):
            strict.check_quota("does-not-exist")
        with pytest.raises(ValidationError):
            strict.check_quota("")

    def test_repository_failure_fails_open(self):
        enforcer = _enforcer(fail_open=True)
        enforcer.repository.find_organization.side_effect = OperationalError("select", {}, Exception("db down"))
        result = enforcer.check_quota("org-1")
        assert result.fail_open is True

    def test_disabled_organization_stays_denied_while_catalog_is_down(self, lifecycle, repository, usage_counter, clock):
        lifecycle.register_organization("org-off", plan_id="starter")
        lifecycle.disable_organization("org-off")
        catalog = MagicMock()
        catalog.get_plan.side_effect = OperationalError("select", {}, Exception("db down"))
        enforcer = QuotaEnforcer(repository, usage_counter, catalog, clock, fail_open=True)

        result = enforcer.check_quota("org-off")

        assert result.status == QuotaStatus.DENY_DISABLED
        assert result.allowed is False
        assert result.fail_open is False
        with pytest.raises(OrganizationDisabledError):
            enforcer.enforce_quota("org-off")

    def test_counts_recorded_usage_in_current_cycle(self, lifecycle, enforcer, clock):
        lifecycle.register_organization("org-sql", plan_id="starter")
        record_billable_request("org-sql", datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))
        record_billable_request("org-sql", datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc))
        # Before the cycle opened on 2024-01-15
        record_billable_request("org-sql", datetime(2024, 1, 14, 23, 0, tzinfo=timezone.utc))

        result = enforcer.check_quota("org-sql")

        assert result.current_usage == 2
        assert result.monthly_quota == 1000
        assert result.plan_id == "starter"
        assert result.fail_open is False


class TestEnforceQuota:
    def test_disabled_raises_distinct_error(self, lifecycle, enforcer):
        lifecycle.register_organization("org-off", plan_id="starter")
        lifecycle.disable_organization("org-off")
        with pytest.raises(OrganizationDisabledError) as exc:
            enforcer.enforce_quota("org-off")
        assert exc.value.code == "organization_disabled"

    def test_quota_exceeded_raises(self, lifecycle, enforcer, clock):
        lifecycle.register_organization("org-trial")
        for minute in range(20):
            record_billable_request("org-trial", datetime(2024, 1, 15, 11, minute, tzinfo=timezone.utc))
        with pytest.raises(QuotaExceededError) as exc:
            enforcer.enforce_quota("org-trial")
        assert exc.value.code == "quota_exceeded"
        assert exc.value.context["current_usage"] == 20

    def test_expired_trial_raises_trial_expired(self, lifecycle, enforcer, clock):
        lifecycle.register_organization("org-trial")
        clock.advance(days=8)
        with pytest.raises(TrialExpiredError) as exc:
            enforcer.enforce_quota("org-trial")
        assert exc.value.code == "trial_expired"
        assert exc.value.status_code == 429

    def test_allowed_request_returns_result(self, lifecycle, enforcer):
        lifecycle.register_organization("org-ok", plan_id="starter")
        result = enforcer.enforce_quota("org-ok")
        assert result.status == QuotaStatus.ALLOW
