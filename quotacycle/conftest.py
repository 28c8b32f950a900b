# quotacycle/conftest.py
from datetime import datetime, timezone

import pytest

from quotacycle.core.clock import FixedClock
from quotacycle.core.database import dispose_engine, init_engine, reset_database
from quotacycle.features.lifecycle.service import OrganizationLifecycle
from quotacycle.features.organizations.repository import SqlOrganizationRepository
from quotacycle.features.plans.service import SqlPlanCatalog, seed_plans
from quotacycle.features.quota.service import QuotaEnforcer
from quotacycle.features.usage.service import SqlUsageCounter


TEST_DATABASE_URL = "sqlite://"


@pytest.fixture(autouse=True)
def db():
    """
    Fresh in-memory database per test, with the default plans seeded.

    A StaticPool keeps the single sqlite connection alive across sessions.
    """
    init_engine(TEST_DATABASE_URL)
    reset_database()
    seed_plans()
    yield
    dispose_engine()


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository():
    return SqlOrganizationRepository()


@pytest.fixture
def catalog():
    return SqlPlanCatalog()


@pytest.fixture
def usage_counter():
    return SqlUsageCounter()


@pytest.fixture
def enforcer(repository, usage_counter, catalog, clock):
    return QuotaEnforcer(repository, usage_counter, catalog, clock, fail_open=True)


@pytest.fixture
def lifecycle(repository, catalog, usage_counter, clock, enforcer):
    return OrganizationLifecycle(repository, catalog, usage_counter, clock, enforcer=enforcer)
