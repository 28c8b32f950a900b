"""
quotacycle/features/usage/service.py

Usage accounting service.

Handles:
- Billable request recording (append-only)
- Windowed request counting
- Window helpers (billing cycle, calendar month)
"""

import calendar
from datetime import date, datetime, time, timezone
from typing import Dict, Optional, Any, List, Protocol, Tuple
from sqlalchemy import select, insert, func

from quotacycle.core.clock import normalize_now
from quotacycle.core.database import get_db_session, usage_events
from quotacycle.models.usage_event import UsageEvent


class UsageCounter(Protocol):
    def count_billable_requests(self, organization_id: str, window_start: datetime, window_end: datetime) -> int:
        """Count billable requests in [window_start, window_end], both inclusive."""
        ...


def cycle_window_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    """Inclusive datetime bounds covering whole days start..end."""
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def calendar_month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Inclusive bounds of the calendar month containing `now`."""
    now = normalize_now(now)
    last_day = calendar.monthrange(now.year, now.month)[1]
    return cycle_window_bounds(
        date(now.year, now.month, 1),
        date(now.year, now.month, last_day),
    )


def _to_utc(value: datetime) -> datetime:
    return normalize_now(value).astimezone(timezone.utc)


def record_billable_request(
    organization_id: str,
    occurred_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> UsageEvent:
    """
    Append a billable request to the usage log.

    Args:
        organization_id: Organization the request is billed to
        occurred_at: Timestamp of the request (defaults to now)
        metadata: Optional metadata (endpoint, collaborator id, price applied)

    Returns:
        UsageEvent instance
    """
    occurred_at = _to_utc(occurred_at) if occurred_at else datetime.now(timezone.utc)

    with get_db_session() as session:
        session.execute(
            insert(usage_events).values(
                organization_id=organization_id,
                occurred_at=occurred_at,
                metadata=metadata
            )
        )

    return UsageEvent(
        organization_id=organization_id,
        occurred_at=occurred_at,
        metadata=metadata
    )


def get_usage_events(
    organization_id: str,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None
) -> List[UsageEvent]:
    """
    Get usage events for an organization, oldest first.

    Args:
        organization_id: Organization to query
        start_time: Optional start of time window (inclusive)
        end_time: Optional end of time window (inclusive)
    """
    with get_db_session() as session:
        query = select(usage_events).where(usage_events.c.organization_id == organization_id)

        if start_time:
            query = query.where(usage_events.c.occurred_at >= _to_utc(start_time))

        if end_time:
            query = query.where(usage_events.c.occurred_at <= _to_utc(end_time))

        rows = session.execute(query.order_by(usage_events.c.occurred_at)).all()

        return [
            UsageEvent(
                organization_id=row.organization_id,
                occurred_at=normalize_now(row.occurred_at),
                metadata=row.metadata
            )
            for row in rows
        ]


def count_billable_requests(organization_id: str, window_start: datetime, window_end: datetime) -> int:
    """
    Count requests in [window_start, window_end].

    Pure query: same organization + same window = same count.
    """
    with get_db_session() as session:
        count = session.execute(
            select(func.count(usage_events.c.id))
            .where(usage_events.c.organization_id == organization_id)
            .where(usage_events.c.occurred_at >= _to_utc(window_start))
            .where(usage_events.c.occurred_at <= _to_utc(window_end))
        ).scalar()
    return int(count or 0)


class SqlUsageCounter:
    """UsageCounter backed by the usage_events table."""

    def count_billable_requests(self, organization_id: str, window_start: datetime, window_end: datetime) -> int:
        return count_billable_requests(organization_id, window_start, window_end)

    def record_billable_request(
        self,
        organization_id: str,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageEvent:
        return record_billable_request(organization_id, occurred_at, metadata)
