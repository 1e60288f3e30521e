"""
access_engine/models/feature_gate.py
Per-feature global switch consulted before any entitlement.
"""

from datetime import datetime
from typing import Optional

from access_engine.models.common import RecordModel


class FeatureGate(RecordModel):
    feature_key: str
    feature_name: str
    description: Optional[str] = None
    requires_membership: bool = True
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


DEFAULT_FEATURE_GATES = (
    {"feature_key": "SOS", "feature_name": "SOS Feature (Quizzes)",
     "description": "Access to quizzes", "requires_membership": False, "is_active": True},
    {"feature_key": "CONNECT", "feature_name": "Connect Feature (Clubs)",
     "description": "Access to clubs", "requires_membership": False, "is_active": True},
    {"feature_key": "CHALLENGE", "feature_name": "Challenge Feature (Challenges)",
     "description": "Access to challenges", "requires_membership": False, "is_active": True},
)
