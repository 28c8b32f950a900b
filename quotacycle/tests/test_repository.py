"""Tests for the organization repository: mapping, versioning, due filter."""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import update

from quotacycle.core.database import get_db_session, organizations
from quotacycle.core.errors import ConflictError, DataIntegrityError, NotFoundError
from quotacycle.features.organizations.repository import list_plan_events
from quotacycle.models.organization import Organization, PendingChange


def _create(repository, organization_id: str, **fields) -> Organization:
    return repository.create(Organization(id=organization_id, pricing_plan_id="starter", **fields))


def test_round_trips_pending_changes_and_trial(repository):
    created = _create(
        repository,
        "org-1",
        monthly_quota=1000,
        trial_expires_at=datetime(2024, 1, 22, 12, 0, tzinfo=timezone.utc),
        monthly_plan_start_date=date(2024, 1, 1),
        monthly_plan_end_date=date(2024, 1, 31),
        pending_monthly_change=PendingChange(
            plan_id="professional", effective_date=date(2024, 2, 1), scheduled_on=date(2024, 1, 10)
        ),
    )

    assert created.pending_monthly_change == PendingChange(
        plan_id="professional", effective_date=date(2024, 2, 1), scheduled_on=date(2024, 1, 10)
    )
    assert created.pending_pay_per_request_change is None
    assert created.trial_expires_at == datetime(2024, 1, 22, 12, 0, tzinfo=timezone.utc)
    assert created.created_at is not None


def test_find_unknown_organization_raises(repository):
    with pytest.raises(NotFoundError):
        repository.find_organization("missing")


def test_save_increments_version_and_writes_events(repository):
    org = _create(repository, "org-1")

    saved = repository.save(org.model_copy(update={"enabled": False}), [{"action": "organization.disabled"}])

    assert saved.version == 1
    assert repository.find_organization("org-1").version == 1
    events = list_plan_events("org-1")
    assert events == [{
        "actor": "system_job",
        "action": "organization.disabled",
        "from_plan_id": None,
        "to_plan_id": None,
        "effective_date": None,
        "window_start": None,
        "window_end": None,
        "payload": None,
    }]


def test_stale_save_conflicts_and_writes_nothing(repository):
    org = _create(repository, "org-1")
    repository.save(org.model_copy(update={"monthly_quota": 5}))

    with pytest.raises(ConflictError):
        repository.save(org.model_copy(update={"monthly_quota": 7}), [{"action": "stale"}])

    assert repository.find_organization("org-1").monthly_quota == 5
    assert list_plan_events("org-1") == []


def test_save_of_missing_row_is_not_found(repository):
    with pytest.raises(NotFoundError):
        repository.save(Organization(id="ghost"))


def test_half_set_pending_pair_is_an_integrity_error(repository):
    _create(repository, "org-1")
    with get_db_session() as session:
        session.execute(
            update(organizations)
            .where(organizations.c.id == "org-1")
            .values(pending_pay_per_request_change_date=date(2024, 2, 1))
        )

    with pytest.raises(DataIntegrityError):
        repository.find_organization("org-1")


def test_due_filter_selects_only_organizations_with_work(repository):
    today = date(2024, 2, 1)
    _create(repository, "cycle-lapsed", monthly_plan_start_date=date(2024, 1, 1), monthly_plan_end_date=date(2024, 1, 31))
    _create(repository, "cycle-current", monthly_plan_start_date=date(2024, 1, 15), monthly_plan_end_date=date(2024, 2, 14))
    _create(repository, "trial-ending", trial_expires_at=datetime(2024, 2, 1, 18, 0, tzinfo=timezone.utc))
    _create(repository, "trial-running", trial_expires_at=datetime(2024, 2, 2, 0, 0, tzinfo=timezone.utc))
    _create(
        repository,
        "pending-due",
        monthly_plan_start_date=date(2024, 1, 15),
        monthly_plan_end_date=date(2024, 2, 14),
        pending_monthly_change=PendingChange(plan_id="professional", effective_date=date(2024, 2, 1)),
    )
    _create(
        repository,
        "pending-later",
        monthly_plan_start_date=date(2024, 1, 15),
        monthly_plan_end_date=date(2024, 2, 14),
        pending_monthly_change=PendingChange(plan_id="professional", effective_date=date(2024, 2, 15)),
    )
    _create(
        repository,
        "fallback-pending",
        monthly_plan_start_date=date(2024, 1, 15),
        monthly_plan_end_date=date(2024, 2, 14),
        pending_pay_per_request_change=PendingChange(plan_id="pay_per_request", effective_date=date(2024, 2, 15)),
    )
    _create(repository, "idle")

    due = repository.find_organizations_due_for_advance(today)

    assert due == ["cycle-lapsed", "fallback-pending", "pending-due", "trial-ending"]
    assert repository.find_organizations_due_for_advance(today, limit=2) == ["cycle-lapsed", "fallback-pending"]
    assert repository.find_organizations_due_for_advance(today, limit=2, after_id="fallback-pending") == [
        "pending-due",
        "trial-ending",
    ]
    assert repository.find_organizations_due_for_advance(today, after_id="trial-ending") == []
