"""
quotacycle/models/usage_event.py

UsageEvent model: one billable request recorded for an organization.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    """
    UsageEvent tracks one billable request.

    Events are append-only; quota usage is always a count over a window,
    never a running total.
    """
    model_config = ConfigDict(frozen=True)

    organization_id: str
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None
