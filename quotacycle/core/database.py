"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (static pool for SQLite)
- Test database support
- Table definitions for organizations, plans, usage and job runs
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Numeric,
    Text,
    JSON,
    Index,
    ForeignKey,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from quotacycle.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the global engine (tests switch databases between runs)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on any exception.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


# Pricing plans
pricing_plans = Table(
    'pricing_plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(100), nullable=False),
    Column('market', String(10), nullable=False, server_default='DEFAULT'),
    Column('currency', String(3), nullable=False, server_default='EUR'),
    Column('price_per_month', Numeric(10, 2), nullable=True),
    Column('price_per_request', Numeric(10, 4), nullable=True),
    Column('monthly_quota', Integer, nullable=True),  # null = unlimited
    Column('trial_period_days', Integer, nullable=True),
    Column('cycle_length_days', Integer, nullable=True),  # null = one calendar month
    Column('allows_overflow', Boolean, nullable=False, server_default='false'),
    Column('is_default', Boolean, nullable=False, server_default='false'),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_pricing_plans_market_active', 'market', 'is_active'),
)

# Organizations (aggregate root of the engine)
organizations = Table(
    'organizations',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', String(255), nullable=True),
    Column('market', String(10), nullable=False, server_default='DEFAULT'),
    Column('enabled', Boolean, nullable=False, server_default='true'),
    Column('monthly_quota', Integer, nullable=True),  # null = unlimited
    Column('pricing_plan_id', String(50), ForeignKey('pricing_plans.plan_id'), nullable=True),
    Column('trial_expires_at', DateTime(timezone=True), nullable=True),
    Column('trial_permanently_expired', Boolean, nullable=False, server_default='false'),
    Column('monthly_plan_start_date', Date, nullable=True),
    Column('monthly_plan_end_date', Date, nullable=True),
    Column('pending_monthly_plan_id', String(50), nullable=True),
    Column('pending_monthly_plan_change_date', Date, nullable=True),
    Column('pending_monthly_plan_scheduled_on', Date, nullable=True),
    Column('pending_pay_per_request_plan_id', String(50), nullable=True),
    Column('pending_pay_per_request_change_date', Date, nullable=True),
    Column('pending_pay_per_request_scheduled_on', Date, nullable=True),
    Column('last_pay_per_request_invoice_date', Date, nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Indexes backing the "due for advance" filter
    Index('idx_organizations_trial_expires_at', 'trial_expires_at'),
    Index('idx_organizations_cycle_end', 'monthly_plan_end_date'),
    Index('idx_organizations_pending_monthly_date', 'pending_monthly_plan_change_date'),
    Index('idx_organizations_pending_ppr_plan', 'pending_pay_per_request_plan_id'),
)

# Billable requests (append-only log, counted by window)
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(100), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    # Composite index for windowed counts: (organization_id, occurred_at)
    Index('idx_usage_events_org_occurred', 'organization_id', 'occurred_at'),
)

# Plan transition / scheduling audit
organization_plan_events = Table(
    'organization_plan_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(100), nullable=False, index=True),
    Column('actor', String(100), nullable=False),  # "system_job" or "user"
    Column('action', String(100), nullable=False),
    Column('from_plan_id', String(50), nullable=True),
    Column('to_plan_id', String(50), nullable=True),
    Column('effective_date', Date, nullable=True),
    Column('window_start', Date, nullable=True),
    Column('window_end', Date, nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_organization_plan_events_action', 'action'),
)

# Daily advance job runs
advance_job_runs = Table(
    'advance_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('run_id', String(64), nullable=False, index=True),
    Column('run_date', Date, nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),  # success | partial
    Column('stats_json', Text, nullable=True),
)
