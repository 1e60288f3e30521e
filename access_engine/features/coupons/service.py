"""
Coupon validation for purchase requests.

The workflow treats the validator as authoritative: it never recomputes the
discount itself, it only stores what ``validate`` returns.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from access_engine.core.database import coupons, feature_requests, get_db_session, session_scope
from access_engine.core.errors import ConflictError, ValidationError
from access_engine.models.common import money, normalize_now
from access_engine.models.coupon import COUPON_TYPES, Coupon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouponValidation:
    """Outcome of validating a code against an amount."""
    is_valid: bool
    discount_amount: float = 0.0
    final_amount: float = 0.0
    coupon: Optional[Coupon] = None
    error: Optional[str] = None


class CouponValidator(Protocol):
    def validate(self, code: str, amount: float, phone: str, request_type: str) -> CouponValidation:
        ...

    def record_redemption(self, code: str) -> None:
        ...


def _invalid(message: str, amount: float) -> CouponValidation:
    return CouponValidation(is_valid=False, final_amount=money(amount), error=message)


class DatabaseCouponValidator:
    """Validates codes stored in the coupons table."""

    def __init__(self, now: Optional[datetime] = None):
        self._now = now

    def validate(self, code: str, amount: float, phone: str, request_type: str) -> CouponValidation:
        normalized = (code or "").strip().upper()
        if not normalized:
            return _invalid("Coupon code is required", amount)
        current = normalize_now(self._now)

        with get_db_session() as session:
            row = session.execute(
                select(coupons).where(
                    and_(coupons.c.code == normalized, coupons.c.is_deleted.is_(False))
                )
            ).first()
            if row is None:
                return _invalid("Invalid coupon code", amount)
            coupon = Coupon.from_row(row)

            if not coupon.is_active:
                return _invalid("Coupon is not active", amount)
            if coupon.valid_from and current < coupon.valid_from:
                return _invalid("Coupon is not yet valid", amount)
            if coupon.valid_until and current > coupon.valid_until:
                return _invalid("Coupon has expired", amount)
            if not coupon.applies_to(request_type):
                return _invalid(f"Coupon is not applicable to {request_type.lower()} purchases", amount)
            if coupon.max_usage_limit is not None and coupon.usage_count >= coupon.max_usage_limit:
                return _invalid("Coupon usage limit reached", amount)
            if amount < coupon.min_purchase_amount:
                return _invalid(f"Minimum purchase amount of {coupon.min_purchase_amount:g} required", amount)

            if phone and coupon.max_usage_per_user:
                used = session.execute(
                    select(func.count()).select_from(feature_requests).where(
                        and_(
                            feature_requests.c.phone == phone,
                            feature_requests.c.coupon_code == coupon.code,
                            feature_requests.c.status == "COMPLETED",
                        )
                    )
                ).scalar() or 0
                if used >= coupon.max_usage_per_user:
                    return _invalid("You have reached the maximum usage limit for this coupon", amount)

        discount = amount * coupon.discount_percent / 100
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
        discount = money(discount)
        return CouponValidation(
            is_valid=True,
            discount_amount=discount,
            final_amount=money(max(0.0, amount - discount)),
            coupon=coupon,
        )

    def record_redemption(self, code: str, *, session=None) -> None:
        """Count one use of ``code``; joins the caller's transaction when ``session`` is given."""
        with session_scope(session) as s:
            s.execute(
                update(coupons)
                .where(coupons.c.code == code.upper())
                .values(usage_count=coupons.c.usage_count + 1)
            )
        logger.info("[coupon] redeemed", extra={"coupon_code": code.upper()})


def create_coupon(
    code: str,
    discount_percent: float,
    *,
    applicable_to: Optional[List[str]] = None,
    max_discount_amount: Optional[float] = None,
    min_purchase_amount: float = 0,
    max_usage_limit: Optional[int] = None,
    max_usage_per_user: int = 1,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
    description: Optional[str] = None,
    is_active: bool = True,
) -> Coupon:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Coupon code is required")
    if not 0 <= discount_percent <= 100:
        raise ValidationError("discount_percent must be between 0 and 100")
    types = [t.upper() for t in (applicable_to or ["ALL"])]
    unknown = [t for t in types if t not in COUPON_TYPES]
    if unknown:
        raise ValidationError(f"Unknown coupon type(s): {', '.join(unknown)}")
    if valid_from and valid_until and normalize_now(valid_until) <= normalize_now(valid_from):
        raise ValidationError("valid_until must be after valid_from")

    values = {
        "id": str(uuid.uuid4()),
        "code": normalized,
        "description": description,
        "discount_percent": float(discount_percent),
        "max_discount_amount": max_discount_amount,
        "min_purchase_amount": float(min_purchase_amount),
        "max_usage_limit": max_usage_limit,
        "usage_count": 0,
        "max_usage_per_user": max_usage_per_user,
        "valid_from": normalize_now(valid_from) if valid_from else None,
        "valid_until": normalize_now(valid_until) if valid_until else None,
        "applicable_to": types,
        "is_active": is_active,
        "is_deleted": False,
        "created_at": normalize_now(None),
    }
    try:
        with get_db_session() as session:
            session.execute(insert(coupons).values(**values))
    except IntegrityError:
        raise ConflictError(f"Coupon code {normalized} already exists")
    return Coupon.model_validate(values)
