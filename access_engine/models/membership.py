"""
access_engine/models/membership.py
Full-membership grants; a valid one unlocks every gated feature.
"""

from datetime import datetime
from typing import Optional

from access_engine.models.common import RecordModel, normalize_now


class UserMembership(RecordModel):
    id: str
    phone: str
    plan_name: Optional[str] = None
    status: str = "ACTIVE"
    payment_status: str = "SUCCESS"
    start_date: datetime
    end_date: Optional[datetime] = None
    is_lifetime: bool = False
    is_deleted: bool = False
    created_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        current = normalize_now(now)
        if self.is_deleted or self.status != "ACTIVE":
            return False
        if self.is_lifetime:
            return True
        return self.end_date is not None and self.end_date > current
