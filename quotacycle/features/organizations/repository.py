"""
quotacycle/features/organizations/repository.py

Organization repository.

Handles:
- Row <-> Organization mapping (pending id/date pairs become PendingChange)
- Optimistic concurrency: saves are conditional on the version token
- The "due for advance" index query used by the daily job
- Audit rows for plan transitions, written in the same transaction as the save
"""

import json
import logging
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, insert, or_, select, update

from quotacycle.core.clock import normalize_now
from quotacycle.core.database import get_db_session, organizations, organization_plan_events
from quotacycle.core.errors import ConflictError, DataIntegrityError, NotFoundError
from quotacycle.models.organization import Organization, PendingChange


logger = logging.getLogger(__name__)


class OrganizationRepository(Protocol):
    def find_organization(self, organization_id: str) -> Organization:
        ...

    def find_organizations_due_for_advance(
        self, today: date, limit: Optional[int] = None, after_id: Optional[str] = None
    ) -> List[str]:
        ...

    def create(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        ...

    def save(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        ...


def _pending_from_columns(
    organization_id: str,
    slot: str,
    plan_id: Optional[str],
    change_date: Optional[date],
    scheduled_on: Optional[date],
) -> Optional[PendingChange]:
    if plan_id is None and change_date is None:
        return None
    if plan_id is None or change_date is None:
        raise DataIntegrityError(
            f"Organization {organization_id} has a half-set pending {slot} change "
            f"(plan_id={plan_id}, change_date={change_date})",
            context={"organization_id": organization_id, "slot": slot},
        )
    try:
        return PendingChange(plan_id=plan_id, effective_date=change_date, scheduled_on=scheduled_on)
    except PydanticValidationError as exc:
        raise DataIntegrityError(
            f"Organization {organization_id} has an invalid pending {slot} change: {exc}",
            context={"organization_id": organization_id, "slot": slot},
        ) from exc


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        market=row.market,
        enabled=bool(row.enabled),
        monthly_quota=row.monthly_quota,
        pricing_plan_id=row.pricing_plan_id,
        trial_expires_at=normalize_now(row.trial_expires_at) if row.trial_expires_at else None,
        trial_permanently_expired=bool(row.trial_permanently_expired),
        monthly_plan_start_date=row.monthly_plan_start_date,
        monthly_plan_end_date=row.monthly_plan_end_date,
        pending_monthly_change=_pending_from_columns(
            row.id,
            "monthly",
            row.pending_monthly_plan_id,
            row.pending_monthly_plan_change_date,
            row.pending_monthly_plan_scheduled_on,
        ),
        pending_pay_per_request_change=_pending_from_columns(
            row.id,
            "pay-per-request",
            row.pending_pay_per_request_plan_id,
            row.pending_pay_per_request_change_date,
            row.pending_pay_per_request_scheduled_on,
        ),
        last_pay_per_request_invoice_date=row.last_pay_per_request_invoice_date,
        version=row.version,
        created_at=normalize_now(row.created_at) if row.created_at else None,
    )


def _organization_values(org: Organization) -> Dict[str, Any]:
    monthly = org.pending_monthly_change
    ppr = org.pending_pay_per_request_change
    trial_expires_at = org.trial_expires_at
    if trial_expires_at is not None:
        trial_expires_at = normalize_now(trial_expires_at).astimezone(timezone.utc)
    return {
        "name": org.name,
        "market": org.market,
        "enabled": org.enabled,
        "monthly_quota": org.monthly_quota,
        "pricing_plan_id": org.pricing_plan_id,
        "trial_expires_at": trial_expires_at,
        "trial_permanently_expired": org.trial_permanently_expired,
        "monthly_plan_start_date": org.monthly_plan_start_date,
        "monthly_plan_end_date": org.monthly_plan_end_date,
        "pending_monthly_plan_id": monthly.plan_id if monthly else None,
        "pending_monthly_plan_change_date": monthly.effective_date if monthly else None,
        "pending_monthly_plan_scheduled_on": monthly.scheduled_on if monthly else None,
        "pending_pay_per_request_plan_id": ppr.plan_id if ppr else None,
        "pending_pay_per_request_change_date": ppr.effective_date if ppr else None,
        "pending_pay_per_request_scheduled_on": ppr.scheduled_on if ppr else None,
        "last_pay_per_request_invoice_date": org.last_pay_per_request_invoice_date,
    }


def _event_values(organization_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
    payload = event.get("payload")
    return {
        "organization_id": organization_id,
        "actor": event.get("actor", "system_job"),
        "action": event["action"],
        "from_plan_id": event.get("from_plan_id"),
        "to_plan_id": event.get("to_plan_id"),
        "effective_date": event.get("effective_date"),
        "window_start": event.get("window_start"),
        "window_end": event.get("window_end"),
        "payload_json": json.dumps(payload, default=str) if payload is not None else None,
    }


class SqlOrganizationRepository:
    """OrganizationRepository backed by the organizations table."""

    def find_organization(self, organization_id: str) -> Organization:
        """Load one organization.

        Raises:
            NotFoundError: If no row exists
            DataIntegrityError: If the stored pending pairs are malformed
        """
        with get_db_session() as session:
            row = session.execute(
                select(organizations).where(organizations.c.id == organization_id)
            ).first()
        if not row:
            raise NotFoundError(
                f"Organization {organization_id} not found",
                context={"organization_id": organization_id},
            )
        return _row_to_organization(row)

    def find_organizations_due_for_advance(
        self, today: date, limit: Optional[int] = None, after_id: Optional[str] = None
    ) -> List[str]:
        """Ids of organizations with a transition due on or before `today`, in id order.

        `after_id` is the keyset cursor: pass the last id of the previous page
        to read the next one.

        Returns ids rather than hydrated rows so each organization is loaded
        (and can fail) on its own. Half-set pending pairs are included so
        they surface as integrity errors instead of being skipped silently.
        """
        end_of_today = datetime.combine(today, time.max, tzinfo=timezone.utc)
        c = organizations.c
        due = or_(
            c.trial_expires_at <= end_of_today,
            c.pending_monthly_plan_change_date <= today,
            c.monthly_plan_end_date < today,
            c.pending_pay_per_request_plan_id.isnot(None),
            c.pending_pay_per_request_change_date.isnot(None),
            and_(c.pending_monthly_plan_id.isnot(None), c.pending_monthly_plan_change_date.is_(None)),
        )
        query = select(c.id).where(due).order_by(c.id)
        if after_id is not None:
            query = query.where(c.id > after_id)
        if limit:
            query = query.limit(limit)
        with get_db_session() as session:
            rows = session.execute(query).all()
        return [row.id for row in rows]

    def create(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        """Insert a new organization at version 0.

        Raises:
            ConflictError: If the id is already taken
        """
        values = _organization_values(organization)
        with get_db_session() as session:
            existing = session.execute(
                select(organizations.c.id).where(organizations.c.id == organization.id)
            ).first()
            if existing:
                raise ConflictError(
                    f"Organization {organization.id} already exists",
                    context={"organization_id": organization.id},
                )
            session.execute(insert(organizations).values(id=organization.id, version=0, **values))
            for event in events or ():
                session.execute(insert(organization_plan_events).values(**_event_values(organization.id, event)))
        return self.find_organization(organization.id)

    def save(self, organization: Organization, events: Optional[Iterable[Dict[str, Any]]] = None) -> Organization:
        """Persist `organization` if nobody changed it since it was read.

        Raises:
            ConflictError: The stored version differs from organization.version
            NotFoundError: The row no longer exists
        """
        values = _organization_values(organization)
        new_version = organization.version + 1
        with get_db_session() as session:
            result = session.execute(
                update(organizations)
                .where(organizations.c.id == organization.id)
                .where(organizations.c.version == organization.version)
                .values(version=new_version, updated_at=datetime.now(timezone.utc), **values)
            )
            if result.rowcount == 0:
                current = session.execute(
                    select(organizations.c.version).where(organizations.c.id == organization.id)
                ).first()
                if current is None:
                    raise NotFoundError(
                        f"Organization {organization.id} not found",
                        context={"organization_id": organization.id},
                    )
                raise ConflictError(
                    f"Organization {organization.id} was modified concurrently "
                    f"(expected version {organization.version}, found {current.version})",
                    context={"organization_id": organization.id, "expected_version": organization.version},
                )
            for event in events or ():
                session.execute(insert(organization_plan_events).values(**_event_values(organization.id, event)))

        logger.debug(
            "[organizations] saved",
            extra={"organization_id": organization.id, "version": new_version},
        )
        return organization.model_copy(update={"version": new_version})


def list_plan_events(organization_id: str) -> List[Dict[str, Any]]:
    """Audit trail of an organization's plan transitions, oldest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(organization_plan_events)
            .where(organization_plan_events.c.organization_id == organization_id)
            .order_by(organization_plan_events.c.id)
        ).all()
    return [
        {
            "actor": row.actor,
            "action": row.action,
            "from_plan_id": row.from_plan_id,
            "to_plan_id": row.to_plan_id,
            "effective_date": row.effective_date,
            "window_start": row.window_start,
            "window_end": row.window_end,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
        }
        for row in rows
    ]
