"""
access_engine/features/entitlements/service.py

Access resolution: does a phone have a feature right now?

Precedence (first match wins, order is part of the contract):
1. gate missing or inactive  -> denied, FEATURE_INACTIVE
2. gate open to everyone     -> granted, OPEN_TO_ALL
3. valid full membership     -> granted, MEMBERSHIP_VALID / FULL_MEMBERSHIP
4. active per-feature grant  -> granted, FEATURE_ACCESS_VALID / INDIVIDUAL_FEATURE
5. otherwise                 -> denied, NO_ACCESS with purchase options

Pure read; "active" is recomputed from raw dates on every call.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import logging
import math

from access_engine.features.feature_access.service import find_active_access, get_feature_gate
from access_engine.features.memberships.service import DatabaseMembershipLookup, MembershipLookup
from access_engine.features.pricing.service import find_bundles_for_features, find_by_feature_key
from access_engine.models.common import normalize_feature_key, normalize_now, normalize_phone


logger = logging.getLogger(__name__)


class AccessReason(str, Enum):
    FEATURE_INACTIVE = "FEATURE_INACTIVE"
    OPEN_TO_ALL = "OPEN_TO_ALL"
    MEMBERSHIP_VALID = "MEMBERSHIP_VALID"
    FEATURE_ACCESS_VALID = "FEATURE_ACCESS_VALID"
    NO_ACCESS = "NO_ACCESS"


class AccessType(str, Enum):
    FULL_MEMBERSHIP = "FULL_MEMBERSHIP"
    INDIVIDUAL_FEATURE = "INDIVIDUAL_FEATURE"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of resolve_access."""
    has_access: bool
    reason: AccessReason
    message: str
    feature_key: str
    access_type: Optional[AccessType] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    purchase_options: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "has_access": self.has_access,
            "reason": self.reason.value,
            "message": self.message,
            "feature_key": self.feature_key,
            "access_type": self.access_type.value if self.access_type else None,
            "detail": self.detail,
        }
        if self.purchase_options is not None:
            data["purchase_options"] = self.purchase_options
        return data


def _purchase_options(feature_key: str) -> Dict[str, Any]:
    offer = find_by_feature_key(feature_key)
    bundles = find_bundles_for_features([feature_key])
    return {
        "membership": True,
        "individual_feature": bool(offer and offer.is_available),
        "feature_pricing": offer.summary() if offer and offer.is_available else None,
        "bundles": [b.summary() for b in bundles if b.is_available],
    }


def resolve_access(
    phone: str,
    feature_key: str,
    *,
    now: Optional[datetime] = None,
    memberships: Optional[MembershipLookup] = None,
) -> AccessDecision:
    """Resolve access for (phone, feature).

    Raises:
        ValidationError: malformed phone or feature key, before any lookup
    """
    normalized_phone = normalize_phone(phone)
    key = normalize_feature_key(feature_key)
    current = normalize_now(now)
    lookup = memberships or DatabaseMembershipLookup()

    gate = get_feature_gate(key)
    if gate is None or not gate.is_active:
        logger.info("[entitlement] DENIED", extra={"phone": normalized_phone, "feature_key": key, "reason": "FEATURE_INACTIVE"})
        return AccessDecision(
            has_access=False,
            reason=AccessReason.FEATURE_INACTIVE,
            message="This feature is currently not available",
            feature_key=key,
        )

    if not gate.requires_membership:
        return AccessDecision(
            has_access=True,
            reason=AccessReason.OPEN_TO_ALL,
            message="This feature is available to everyone",
            feature_key=key,
        )

    membership = lookup.find_active_membership(normalized_phone, current)
    if membership is not None:
        days_remaining = None
        if not membership.is_lifetime and membership.end_date is not None:
            days_remaining = max(0, math.ceil((membership.end_date - current).total_seconds() / 86400))
        return AccessDecision(
            has_access=True,
            reason=AccessReason.MEMBERSHIP_VALID,
            message="Access granted through membership",
            feature_key=key,
            access_type=AccessType.FULL_MEMBERSHIP,
            detail={
                "membership_id": membership.id,
                "plan_name": membership.plan_name,
                "is_lifetime": membership.is_lifetime,
                "end_date": membership.end_date.isoformat() if membership.end_date else None,
                "days_remaining": days_remaining,
            },
        )

    grant = find_active_access(normalized_phone, key, now=current)
    if grant is not None:
        return AccessDecision(
            has_access=True,
            reason=AccessReason.FEATURE_ACCESS_VALID,
            message=f"Access granted through {gate.feature_name} purchase",
            feature_key=key,
            access_type=AccessType.INDIVIDUAL_FEATURE,
            detail={
                "access_id": grant.id,
                "source": grant.source.value,
                "is_lifetime": grant.is_lifetime,
                "start_date": grant.start_date.isoformat(),
                "end_date": grant.end_date.isoformat() if grant.end_date else None,
                "days_remaining": grant.days_remaining(current),
            },
        )

    logger.info("[entitlement] DENIED", extra={"phone": normalized_phone, "feature_key": key, "reason": "NO_ACCESS"})
    return AccessDecision(
        has_access=False,
        reason=AccessReason.NO_ACCESS,
        message=f"{gate.feature_name} requires a membership or a feature purchase",
        feature_key=key,
        purchase_options=_purchase_options(key),
    )
