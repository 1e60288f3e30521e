"""
access_engine/models/feature_pricing.py
Catalog offers: single features and bundles, with derived lifetime flag and availability.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, Field, model_validator

from access_engine.models.common import RecordModel


def is_lifetime_duration(duration_in_days: Optional[int]) -> bool:
    return duration_in_days is None or duration_in_days == 0


class FeaturePricing(RecordModel):
    """A purchasable offer."""

    id: str
    feature_key: str
    name: str
    description: Optional[str] = None
    price: float = Field(ge=0)
    compare_at_price: Optional[float] = None
    duration_in_days: Optional[int] = None
    is_lifetime: bool = False
    is_bundle: bool = False
    included_features: List[str] = Field(default_factory=list)
    perks: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("metadata", "metadata_json"))
    display_order: int = 0
    is_featured: bool = False
    is_active: bool = True
    max_purchases: Optional[int] = None
    current_purchases: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    deleted_by: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_available(self) -> bool:
        if not self.is_active or self.is_deleted:
            return False
        if self.max_purchases is not None and self.current_purchases >= self.max_purchases:
            return False
        return True

    def can_be_purchased(self) -> Tuple[bool, Optional[str]]:
        if not self.is_active or self.is_deleted:
            return False, "Pricing is not available"
        if self.max_purchases is not None and self.current_purchases >= self.max_purchases:
            return False, "Purchase limit reached"
        return True, None

    def snapshot(self) -> Dict[str, Any]:
        """Terms copied onto an entitlement at approval time."""
        return {
            "pricing_id": self.id,
            "feature_key": self.feature_key,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "compare_at_price": self.compare_at_price,
            "duration_in_days": self.duration_in_days,
            "is_lifetime": self.is_lifetime,
            "is_bundle": self.is_bundle,
            "perks": list(self.perks),
        }

    def summary(self) -> Dict[str, Any]:
        """Public shape used in purchase options and the pricing page."""
        return {
            "id": self.id,
            "feature_key": self.feature_key,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "compare_at_price": self.compare_at_price,
            "duration_in_days": self.duration_in_days,
            "is_lifetime": self.is_lifetime,
            "is_bundle": self.is_bundle,
            "included_features": list(self.included_features),
            "perks": list(self.perks),
            "is_featured": self.is_featured,
            "is_available": self.is_available,
        }


class PricingCreate(BaseModel):
    """Operator input for a new offer."""

    feature_key: str = Field(min_length=2, max_length=50)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    price: float = Field(ge=0)
    compare_at_price: Optional[float] = Field(default=None, ge=0)
    duration_in_days: Optional[int] = Field(default=None, ge=0)
    is_bundle: bool = False
    included_features: List[str] = Field(default_factory=list)
    perks: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    display_order: int = 0
    is_featured: bool = False
    is_active: bool = True
    max_purchases: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _compare_at_not_below_price(self):
        if self.compare_at_price is not None and self.compare_at_price < self.price:
            raise ValueError("compare_at_price must be greater than or equal to price")
        return self


class PricingUpdate(BaseModel):
    """Partial operator update; only fields explicitly set are applied."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    price: Optional[float] = Field(default=None, ge=0)
    compare_at_price: Optional[float] = Field(default=None, ge=0)
    duration_in_days: Optional[int] = Field(default=None, ge=0)
    included_features: Optional[List[str]] = None
    perks: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    display_order: Optional[int] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None
    max_purchases: Optional[int] = Field(default=None, ge=1)
