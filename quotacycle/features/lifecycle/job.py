"""
Scheduled daily cycle advance.

Entry point for the cron trigger: runs OrganizationLifecycle.run_daily_advance
under a job correlation id and writes one advance_job_runs row per run.
Safe to run twice on the same day; the second run finds nothing due.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert

from quotacycle.core.clock import FixedClock, normalize_now
from quotacycle.core.database import advance_job_runs, get_db_session
from quotacycle.core.logging import bind_request_id
from quotacycle.features.lifecycle.service import OrganizationLifecycle
from quotacycle.features.organizations.repository import SqlOrganizationRepository
from quotacycle.features.plans.service import SqlPlanCatalog
from quotacycle.features.usage.service import SqlUsageCounter


JOB_NAME = "system.cycle_advance"

logger = logging.getLogger(__name__)


def build_lifecycle(now: datetime) -> OrganizationLifecycle:
    return OrganizationLifecycle(
        SqlOrganizationRepository(),
        SqlPlanCatalog(),
        SqlUsageCounter(),
        FixedClock(now),
    )


def run_advance_job(now: Optional[datetime] = None, lifecycle: Optional[OrganizationLifecycle] = None) -> Dict[str, Any]:
    started_at = normalize_now(now)
    lifecycle = lifecycle or build_lifecycle(started_at)

    with bind_request_id() as run_id:
        logger.info("[advance_job] started", extra={"run_date": started_at.date().isoformat()})
        result = lifecycle.run_daily_advance(started_at)
        status = "partial" if result["errors"] else "success"

        stats = {
            "advanced": result["advanced"],
            "unchanged": result["unchanged"],
            "errors": result["errors"],
        }
        with get_db_session() as session:
            session.execute(
                insert(advance_job_runs).values(
                    job_name=JOB_NAME,
                    run_id=run_id,
                    run_date=started_at.date(),
                    started_at=started_at,
                    finished_at=datetime.now(timezone.utc),
                    status=status,
                    stats_json=json.dumps(stats),
                )
            )

        logger.info(
            "[advance_job] finished",
            extra={"status": status, "advanced": result["advanced"], "errors": len(result["errors"])},
        )

    return {**result, "status": status, "run_id": run_id, "timestamp": started_at.isoformat()}
