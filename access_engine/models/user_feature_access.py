"""
access_engine/models/user_feature_access.py
Per-phone, per-feature access grants and their time-derived status.

Status is always recomputable from raw fields: the persisted ``status`` of
EXPIRED is a reporting cache written by the sweeper, never the authority.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, Field

from access_engine.models.common import RecordModel, normalize_now


class AccessStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class AccessSource(str, Enum):
    REQUEST = "REQUEST"
    ADMIN_GRANT = "ADMIN_GRANT"
    PROMOTIONAL = "PROMOTIONAL"


class DisplayStatus(str, Enum):
    """What an operator or requester sees, derived at read time."""

    DELETED = "DELETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PENDING = "PENDING"
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = (AccessStatus.CANCELLED.value, AccessStatus.REFUNDED.value)


class UserFeatureAccess(RecordModel):
    id: str
    phone: str
    user_id: Optional[str] = None
    feature_key: str
    source: AccessSource = AccessSource.REQUEST
    feature_request_id: Optional[str] = None
    feature_pricing_id: Optional[str] = None
    order_id: str
    request_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    amount_paid: float = 0
    start_date: datetime
    end_date: Optional[datetime] = None
    is_lifetime: bool = False
    status: AccessStatus = AccessStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    pricing_snapshot: Dict[str, Any] = Field(default_factory=dict)
    admin_notes: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata", "metadata_json"))
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.value in TERMINAL_STATUSES

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        current = normalize_now(now)
        if self.is_deleted:
            return False
        if self.status != AccessStatus.ACTIVE or self.payment_status != PaymentStatus.SUCCESS:
            return False
        if self.start_date > current:
            return False
        if self.is_lifetime:
            return True
        return self.end_date is not None and self.end_date > current

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.is_lifetime or self.end_date is None:
            return False
        return self.end_date <= normalize_now(now)

    def current_status(self, now: Optional[datetime] = None) -> DisplayStatus:
        current = normalize_now(now)
        if self.is_deleted:
            return DisplayStatus.DELETED
        if self.status == AccessStatus.CANCELLED:
            return DisplayStatus.CANCELLED
        if self.status == AccessStatus.REFUNDED:
            return DisplayStatus.REFUNDED
        if self.payment_status != PaymentStatus.SUCCESS or self.status == AccessStatus.PENDING:
            return DisplayStatus.PENDING
        if self.start_date > current:
            return DisplayStatus.UPCOMING
        if self.is_expired(current):
            return DisplayStatus.EXPIRED
        return DisplayStatus.ACTIVE

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        """None for lifetime grants, 0 when not active, else whole days left (rounded up)."""
        current = normalize_now(now)
        if self.is_lifetime:
            return None
        if not self.is_currently_active(current):
            return 0
        seconds = (self.end_date - current).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def to_public(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        current = normalize_now(now)
        data = self.model_dump(mode="json")
        data["current_status"] = self.current_status(current).value
        data["is_currently_active"] = self.is_currently_active(current)
        data["days_remaining"] = self.days_remaining(current)
        return data
