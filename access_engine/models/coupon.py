"""
access_engine/models/coupon.py
Discount codes scoped to request types.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from access_engine.models.common import RecordModel


COUPON_TYPES = ("EVENT", "MEMBERSHIP", "SESSION", "SERVICE", "FEATURE", "ALL")


class Coupon(RecordModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_percent: float = Field(ge=0, le=100)
    max_discount_amount: Optional[float] = None
    min_purchase_amount: float = 0
    max_usage_limit: Optional[int] = None
    usage_count: int = 0
    max_usage_per_user: int = 1
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    applicable_to: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_deleted: bool = False
    created_at: Optional[datetime] = None

    def applies_to(self, request_type: str) -> bool:
        return "ALL" in self.applicable_to or request_type in self.applicable_to
