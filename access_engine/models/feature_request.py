"""
access_engine/models/feature_request.py
Purchase intents awaiting an operator decision, and their state machine.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from access_engine.models.common import RecordModel


class RequestStatus(str, Enum):
    """PENDING -> PAYMENT_SENT -> COMPLETED, or PENDING -> REJECTED."""

    PENDING = "PENDING"
    REJECTED = "REJECTED"
    PAYMENT_SENT = "PAYMENT_SENT"
    COMPLETED = "COMPLETED"


WITHDRAWN = "WITHDRAWN"


class FeatureRequest(RecordModel):
    id: str
    phone: str
    name: str
    requested_features: List[str] = Field(default_factory=list)
    requested_bundle_id: Optional[str] = None
    approved_features: List[str] = Field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    original_amount: Optional[float] = None
    payment_amount: Optional[float] = None
    coupon_code: Optional[str] = None
    discount_percent: Optional[float] = None
    discount_amount: float = 0
    payment_link_id: Optional[str] = None
    payment_url: Optional[str] = None
    payment_expires_at: Optional[datetime] = None
    payment_link_deactivated_at: Optional[datetime] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    duration_in_days: Optional[int] = None
    pricing_snapshot: Dict[str, Any] = Field(default_factory=dict)
    user_feature_access_ids: List[str] = Field(default_factory=list)
    last_payment_error: Optional[str] = None
    completed_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_status(self) -> str:
        return WITHDRAWN if self.is_deleted else self.status.value

    def to_public(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        data["display_status"] = self.display_status
        return data
