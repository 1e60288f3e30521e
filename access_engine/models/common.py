"""
access_engine/models/common.py
Shared identifiers, normalizers and time helpers used by every record model.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from access_engine.core.errors import ValidationError


class FeatureKey(str, Enum):
    """Features that can be gated and sold individually."""

    SOS = "SOS"  # quizzes
    CONNECT = "CONNECT"  # clubs
    CHALLENGE = "CHALLENGE"  # challenges


FEATURE_KEYS = tuple(k.value for k in FeatureKey)
FEATURE_KEY_PATTERN = re.compile(r"^[A-Z_]{2,50}$")
PHONE_DIGITS = 10


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Interpret naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return utc_now()
    return as_utc(now)


def money(value: Any) -> float:
    return round(float(value or 0), 2)


def normalize_phone(raw: Any) -> str:
    """Strip everything but digits and keep the last 10."""
    digits = re.sub(r"\D", "", str(raw or ""))
    if len(digits) < PHONE_DIGITS:
        raise ValidationError(
            "Phone number must contain at least 10 digits",
            details={"field": "phone"},
        )
    return digits[-PHONE_DIGITS:]


def normalize_feature_key(raw: Any) -> str:
    """Upper-case a feature key and check its shape.

    Well-formed keys that are unknown to the catalog are allowed here;
    callers decide whether an unknown key is an error.
    """
    key = str(raw or "").strip().upper()
    if not FEATURE_KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid feature key: {raw!r}", details={"field": "feature_key"})
    return key


def require_known_features(raw_keys: Iterable[Any]) -> List[str]:
    """Normalize, dedupe (order-preserving) and restrict to the FeatureKey enum."""
    keys: List[str] = []
    for raw in raw_keys:
        key = normalize_feature_key(raw)
        if key not in FEATURE_KEYS:
            raise ValidationError(
                f"Invalid feature: {key}. Valid features are: {', '.join(FEATURE_KEYS)}",
                details={"field": "features", "invalid": key},
            )
        if key not in keys:
            keys.append(key)
    return keys


def normalize_name(raw: Any) -> str:
    name = " ".join(str(raw or "").split())
    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters", details={"field": "name"})
    if len(name) > 100:
        raise ValidationError("Name cannot exceed 100 characters", details={"field": "name"})
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split(" "))


class RecordModel(BaseModel):
    """Immutable view of a persisted row; naive timestamps are read as UTC."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, value):
        if isinstance(value, datetime):
            return as_utc(value)
        return value

    @classmethod
    def from_row(cls, row):
        return cls.model_validate(dict(row._mapping))
