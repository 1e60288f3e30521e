"""
Feature request workflow.

State machine:
    PENDING --approve--> PAYMENT_SENT --payment confirmed--> COMPLETED
    PENDING --reject---> REJECTED
    PENDING --withdraw-> soft-deleted (shown as WITHDRAWN)

Every transition is a conditional UPDATE on the expected status, so a request
that moved underneath the caller fails with InvalidStateError instead of being
overwritten. Pending (phone, feature) pairs are also written to
pending_feature_claims, whose unique constraint rejects a concurrent
overlapping submission.

Collaborators (payment provider, coupon validator, notifier, settings) are
keyword arguments so callers and tests can inject their own.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import String, and_, cast, delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from access_engine.core.admin_auth import AdminActor
from access_engine.core.config import Settings, settings
from access_engine.core.database import feature_requests, get_db_session, pending_feature_claims
from access_engine.core.errors import (
    ConflictError,
    ExternalServiceError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    PermissionError,
    ValidationError,
)
from access_engine.features.audit.service import record_admin_action, resolve_actor_id
from access_engine.features.coupons.service import CouponValidation, CouponValidator, DatabaseCouponValidator
from access_engine.features.feature_access.service import (
    active_feature_keys,
    generate_order_id,
    insert_access_record,
    list_access_for_request,
)
from access_engine.features.notifications.service import Notifier, get_notifier
from access_engine.features.payments.provider import PaymentProvider, PaymentProviderError
from access_engine.features.payments.service import get_payment_provider
from access_engine.features.pricing.service import find_by_feature_key, get_pricing, increment_purchase_count
from access_engine.models.common import (
    money,
    normalize_feature_key,
    normalize_name,
    normalize_now,
    normalize_phone,
    require_known_features,
)
from access_engine.models.feature_pricing import FeaturePricing
from access_engine.models.feature_request import WITHDRAWN, FeatureRequest, RequestStatus
from access_engine.models.user_feature_access import AccessSource, AccessStatus, PaymentStatus, UserFeatureAccess

logger = logging.getLogger(__name__)

COUPON_REQUEST_TYPE = "FEATURE"
SORTABLE_FIELDS = ("created_at", "updated_at", "status", "name", "phone", "payment_amount")


@dataclass(frozen=True)
class ApprovalResult:
    request: FeatureRequest
    payment_url: str
    notification_sent: bool


@dataclass(frozen=True)
class PaymentConfirmation:
    request: FeatureRequest
    access: List[UserFeatureAccess] = field(default_factory=list)
    already_processed: bool = False


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

def _load_request(session, request_id: str, *, include_deleted: bool = False) -> FeatureRequest:
    stmt = select(feature_requests).where(feature_requests.c.id == request_id)
    if not include_deleted:
        stmt = stmt.where(feature_requests.c.is_deleted.is_(False))
    row = session.execute(stmt).first()
    if row is None:
        raise NotFoundError(f"Feature request {request_id} not found")
    return FeatureRequest.from_row(row)


def _transition(session, request_id: str, expected: RequestStatus, **values) -> None:
    """UPDATE ... WHERE status = expected; raise InvalidStateError if the row moved."""
    result = session.execute(
        update(feature_requests)
        .where(
            and_(
                feature_requests.c.id == request_id,
                feature_requests.c.status == expected.value,
                feature_requests.c.is_deleted.is_(False),
            )
        )
        .values(**values)
    )
    if not result.rowcount:
        current = _load_request(session, request_id, include_deleted=True)
        raise InvalidStateError(
            f"Cannot move request from {current.display_status}; it must be {expected.value}",
            current_status=current.display_status,
        )


def _require_pending(request: FeatureRequest, action: str) -> None:
    if request.status != RequestStatus.PENDING:
        raise InvalidStateError(
            f"Cannot {action} request with status: {request.status.value}. Only PENDING requests can be {action}d.",
            current_status=request.status.value,
        )


def _release_claims(session, request_id: str) -> None:
    session.execute(delete(pending_feature_claims).where(pending_feature_claims.c.request_id == request_id))


def _pending_overlap(phone: str, features: Sequence[str]) -> Optional[ConflictError]:
    with get_db_session() as session:
        rows = session.execute(
            select(pending_feature_claims).where(
                and_(
                    pending_feature_claims.c.phone == phone,
                    pending_feature_claims.c.feature_key.in_(list(features)),
                )
            )
        ).fetchall()
    if not rows:
        return None
    overlapping = sorted({r.feature_key for r in rows})
    existing_request_id = rows[0].request_id
    return ConflictError(
        f"You already have a pending request for: {', '.join(overlapping)}. "
        "Withdraw it before submitting a new one.",
        code="pending_request_exists",
        details={"features": overlapping, "existing_request_id": existing_request_id, "can_withdraw": True},
    )


def _active_overlap(phone: str, features: Sequence[str], now: datetime) -> Optional[ConflictError]:
    active = active_feature_keys(phone, now=now)
    overlapping = [f for f in features if f in active]
    if not overlapping:
        return None
    return ConflictError(
        f"You already have active access to: {', '.join(overlapping)}",
        code="access_already_active",
        details={"features": overlapping, "existing_access_ids": [active[f] for f in overlapping]},
    )


def _validate_coupon(
    validator: CouponValidator, code: str, amount: float, phone: str
) -> CouponValidation:
    try:
        result = validator.validate(code, amount, phone, COUPON_REQUEST_TYPE)
    except Exception as e:
        raise ExternalServiceError(f"Coupon validation failed: {e}") from e
    return result


def allocate_amount(total: float, weights: Sequence[float]) -> List[float]:
    """Split ``total`` across ``weights`` proportionally, remainder on the last share."""
    if not weights:
        return []
    total = money(total)
    weight_sum = sum(weights)
    if weight_sum <= 0:
        weights = [1.0] * len(weights)
        weight_sum = float(len(weights))
    shares = [money(total * w / weight_sum) for w in weights[:-1]]
    shares.append(money(total - sum(shares)))
    return shares


def describe_features(features: Sequence[str]) -> str:
    if len(features) == 1:
        return f"{features[0]} Tab Access"
    return f"Feature Access: {' + '.join(features)}"


# ---------------------------------------------------------------------------
# requester operations
# ---------------------------------------------------------------------------

def submit_request(
    phone: str,
    name: str,
    *,
    requested_features: Optional[Sequence[str]] = None,
    bundle_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
    coupons: Optional[CouponValidator] = None,
    now: Optional[datetime] = None,
) -> FeatureRequest:
    """Create a PENDING request for individual features or one bundle.

    Raises:
        ValidationError: bad phone/name/features, unavailable offer, invalid coupon
        NotFoundError: unknown bundle
        ConflictError: overlapping pending request, or feature already active
    """
    normalized_phone = normalize_phone(phone)
    normalized_name = normalize_name(name)
    current = normalize_now(now)

    has_features = bool(requested_features)
    if has_features == bool(bundle_id):
        raise ValidationError("Provide either requested_features or bundle_id, not both")

    bundle: Optional[FeaturePricing] = None
    if bundle_id:
        bundle = get_pricing(bundle_id)
        if not bundle.is_bundle:
            raise ValidationError("bundle_id does not refer to a bundle", details={"field": "bundle_id"})
        available, reason = bundle.can_be_purchased()
        if not available:
            raise ValidationError(f"Bundle is not available: {reason}", details={"field": "bundle_id"})
        features = list(bundle.included_features)
    else:
        features = require_known_features(requested_features or [])

    conflict = _pending_overlap(normalized_phone, features) or _active_overlap(normalized_phone, features, current)
    if conflict is not None:
        logger.info(
            "[feature-request] submit conflict",
            extra={"phone": normalized_phone, "features": features, "error_code": conflict.code},
        )
        raise conflict

    if bundle is not None:
        total = money(bundle.price)
    else:
        total = 0.0
        for key in features:
            offer = find_by_feature_key(key)
            if offer is None or not offer.is_available:
                raise ValidationError(f"Feature {key} is not available for purchase", details={"feature_key": key})
            total += offer.price
        total = money(total)

    coupon_values: Dict[str, Any] = {}
    if coupon_code and total > 0:
        result = _validate_coupon(coupons or DatabaseCouponValidator(now=current), coupon_code, total, normalized_phone)
        if not result.is_valid:
            raise ValidationError(f"Coupon error: {result.error}", details={"field": "coupon_code"})
        coupon_values = {
            "coupon_code": result.coupon.code if result.coupon else coupon_code.strip().upper(),
            "discount_percent": result.coupon.discount_percent if result.coupon else None,
            "discount_amount": result.discount_amount,
            "payment_amount": result.final_amount,
        }

    request_id = str(uuid.uuid4())
    values = {
        "id": request_id,
        "phone": normalized_phone,
        "name": normalized_name,
        "requested_features": features,
        "requested_bundle_id": bundle.id if bundle else None,
        "approved_features": [],
        "status": RequestStatus.PENDING.value,
        "original_amount": total,
        "discount_amount": 0.0,
        "pricing_snapshot": {},
        "user_feature_access_ids": [],
        "is_deleted": False,
        "created_at": current,
        "updated_at": current,
        **coupon_values,
    }

    try:
        with get_db_session() as session:
            session.execute(insert(feature_requests).values(**values))
            for key in features:
                session.execute(
                    insert(pending_feature_claims).values(
                        phone=normalized_phone, feature_key=key, request_id=request_id, created_at=current
                    )
                )
    except IntegrityError:
        # lost a race with a concurrent submission for the same feature
        conflict = _pending_overlap(normalized_phone, features)
        if conflict is None:
            raise
        raise conflict

    logger.info(
        "[feature-request] submitted",
        extra={"request_ref": request_id, "phone": normalized_phone, "features": features, "amount": total},
    )
    return FeatureRequest.model_validate(values)


def withdraw_request(request_id: str, phone: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Requester cancels their own PENDING request; possession of the phone is the authorization."""
    normalized_phone = normalize_phone(phone)
    current = normalize_now(now)
    with get_db_session() as session:
        request = _load_request(session, request_id)
        if request.phone != normalized_phone:
            raise PermissionError("You can only withdraw your own requests")
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(
                f"Cannot withdraw request with status: {request.status.value}. Only PENDING requests can be withdrawn.",
                current_status=request.status.value,
            )
        _transition(session, request_id, RequestStatus.PENDING, is_deleted=True, deleted_at=current, updated_at=current)
        _release_claims(session, request_id)

    logger.info("[feature-request] withdrawn", extra={"request_ref": request_id, "phone": normalized_phone})
    return {"id": request_id, "status": WITHDRAWN, "withdrawn_at": current.isoformat()}


# ---------------------------------------------------------------------------
# operator operations
# ---------------------------------------------------------------------------

def _price_approval(
    request: FeatureRequest, features: List[str]
) -> tuple[float, Dict[str, Dict[str, Any]], Optional[FeaturePricing]]:
    """Original amount and per-feature snapshots for the approved set.

    A request submitted for a bundle keeps the bundle price as long as the
    approved set is exactly the bundle's features.
    """
    if request.requested_bundle_id:
        bundle = get_pricing(request.requested_bundle_id, include_deleted=True)
        if not bundle.is_deleted and set(features) == set(bundle.included_features):
            available, reason = bundle.can_be_purchased()
            if not available:
                raise ValidationError(reason, details={"pricing_id": bundle.id, "feature_key": bundle.feature_key})
            share = bundle.price / len(features)
            snapshots = {
                key: {**bundle.snapshot(), "bundle_key": bundle.feature_key, "feature_key": key, "allocation_weight": share}
                for key in features
            }
            return money(bundle.price), snapshots, bundle

    total = 0.0
    snapshots = {}
    for key in features:
        offer = find_by_feature_key(key)
        if offer is None:
            raise ValidationError(f"No active pricing for feature {key}", details={"feature_key": key})
        available, reason = offer.can_be_purchased()
        if not available:
            raise ValidationError(reason, details={"pricing_id": offer.id, "feature_key": key})
        total += offer.price
        snapshots[key] = {**offer.snapshot(), "allocation_weight": offer.price}
    return money(total), snapshots, None


def approve_request(
    request_id: str,
    *,
    duration_in_days: Optional[int] = None,
    approved_features: Optional[Sequence[str]] = None,
    payment_amount: Optional[float] = None,
    coupon_code: Optional[str] = None,
    admin_notes: Optional[str] = None,
    actor: Optional[AdminActor] = None,
    send_notification: bool = True,
    provider: Optional[PaymentProvider] = None,
    coupons: Optional[CouponValidator] = None,
    notifier: Optional[Notifier] = None,
    settings_obj: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> ApprovalResult:
    """Price the request, issue a payment link and move it to PAYMENT_SENT.

    ``duration_in_days`` of 0 approves lifetime access; None falls back to
    DEFAULT_ACCESS_DURATION_DAYS. An explicit ``payment_amount`` overrides the
    coupon result and the discount becomes ``original - payment_amount``
    (never negative).

    Raises:
        NotFoundError, InvalidStateError, ValidationError, ConflictError
        ExternalServiceError: payment link creation failed (nothing persisted)
    """
    cfg = settings_obj or settings
    current = normalize_now(now)
    if payment_amount is not None and payment_amount < 0:
        raise ValidationError("Payment amount cannot be negative", details={"field": "payment_amount"})
    duration = cfg.DEFAULT_ACCESS_DURATION_DAYS if duration_in_days is None else duration_in_days
    if duration < 0:
        raise ValidationError("duration_in_days cannot be negative", details={"field": "duration_in_days"})
    if admin_notes and len(admin_notes) > 1000:
        raise ValidationError("admin_notes cannot exceed 1000 characters")

    with get_db_session() as session:
        request = _load_request(session, request_id)
    _require_pending(request, "approve")

    features = require_known_features(approved_features) if approved_features else list(request.requested_features)
    if not features:
        raise ValidationError("At least one feature must be approved")
    conflict = _active_overlap(request.phone, features, current)
    if conflict is not None:
        raise conflict

    original_amount, snapshots, bundle = _price_approval(request, features)

    code = (coupon_code or request.coupon_code or "").strip().upper() or None
    discount_amount = 0.0
    discount_percent = None
    amount = original_amount
    if code and original_amount > 0:
        result = _validate_coupon(coupons or DatabaseCouponValidator(now=current), code, original_amount, request.phone)
        if result.is_valid:
            discount_amount = result.discount_amount
            discount_percent = result.coupon.discount_percent if result.coupon else None
            amount = result.final_amount
        elif payment_amount is None:
            raise ValidationError(f"Coupon error: {result.error}", details={"field": "coupon_code"})
        else:
            logger.warning(
                "[feature-request] coupon ignored, explicit amount given",
                extra={"request_ref": request_id, "coupon_code": code, "error_message": result.error},
            )
            code = None
    else:
        code = None

    if payment_amount is not None:
        amount = money(payment_amount)
        discount_amount = money(max(0.0, original_amount - amount))

    order_id = generate_order_id("FR")
    expires_at = current + timedelta(days=cfg.PAYMENT_LINK_EXPIRY_DAYS)
    description = describe_features(features)
    notes = {
        "order_id": order_id,
        "type": "FEATURE_REQUEST",
        "phone": request.phone,
        "request_id": request.id,
        "features": ",".join(features),
        "duration_in_days": str(duration),
    }

    if provider is None:
        provider = get_payment_provider(settings_obj)
    try:
        link = provider.create_payment_link(
            amount=amount,
            currency=cfg.PAYMENT_CURRENCY,
            description=description,
            customer_name=request.name,
            customer_phone=request.phone,
            reference_id=order_id,
            notes=notes,
            expires_at=expires_at,
        )
    except PaymentProviderError as e:
        logger.error(
            "[feature-request] payment link creation failed",
            extra={"request_ref": request_id, "order_id": order_id, "error_message": str(e)},
        )
        raise ExternalServiceError(f"Payment link creation failed: {e}") from e

    pricing_snapshot = {
        "features": snapshots,
        "bundle_id": bundle.id if bundle else None,
        "original_amount": original_amount,
        "payment_amount": amount,
        "approved_at": current.isoformat(),
    }
    with get_db_session() as session:
        _transition(
            session,
            request_id,
            RequestStatus.PENDING,
            status=RequestStatus.PAYMENT_SENT.value,
            approved_features=features,
            reviewed_by=resolve_actor_id(actor, default=None),
            reviewed_at=current,
            admin_notes=admin_notes,
            original_amount=original_amount,
            payment_amount=amount,
            coupon_code=code,
            discount_percent=discount_percent,
            discount_amount=discount_amount,
            duration_in_days=duration,
            order_id=order_id,
            payment_link_id=link.link_id,
            payment_url=link.url,
            payment_expires_at=link.expires_at or expires_at,
            pricing_snapshot=pricing_snapshot,
            updated_at=current,
        )
        _release_claims(session, request_id)
        record_admin_action(
            action="feature_request.approve",
            actor=actor,
            target_phone=request.phone,
            target_resource=f"feature_request:{request_id}",
            payload={"features": features, "amount": amount, "duration_in_days": duration, "order_id": order_id},
            session=session,
        )
        approved = _load_request(session, request_id)

    logger.info(
        "[feature-request] approved",
        extra={"request_ref": request_id, "order_id": order_id, "features": features, "amount": amount},
    )

    notification_sent = False
    if send_notification:
        notification_sent = _notify_payment_link(approved, notifier or get_notifier(cfg))
    return ApprovalResult(request=approved, payment_url=link.url, notification_sent=notification_sent)


def _notify_payment_link(request: FeatureRequest, notifier: Notifier) -> bool:
    """Fire-and-forget; a delivery failure is logged and reported as False."""
    try:
        notifier.send_payment_link(
            phone=request.phone,
            name=request.name,
            description=describe_features(request.approved_features),
            url=request.payment_url or "",
            amount=request.payment_amount or 0.0,
            request_id=request.id,
        )
    except Exception:
        logger.warning(
            "[feature-request] payment link notification failed",
            exc_info=True,
            extra={"request_ref": request.id, "phone": request.phone},
        )
        return False
    return True


def reject_request(
    request_id: str,
    rejection_reason: str,
    *,
    admin_notes: Optional[str] = None,
    actor: Optional[AdminActor] = None,
    now: Optional[datetime] = None,
) -> FeatureRequest:
    reason = (rejection_reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required", details={"field": "rejection_reason"})
    if len(reason) > 500:
        raise ValidationError("Rejection reason cannot exceed 500 characters", details={"field": "rejection_reason"})
    current = normalize_now(now)

    with get_db_session() as session:
        request = _load_request(session, request_id)
        _require_pending(request, "reject")
        _transition(
            session,
            request_id,
            RequestStatus.PENDING,
            status=RequestStatus.REJECTED.value,
            rejection_reason=reason,
            admin_notes=admin_notes,
            reviewed_by=resolve_actor_id(actor, default=None),
            reviewed_at=current,
            updated_at=current,
        )
        _release_claims(session, request_id)
        record_admin_action(
            action="feature_request.reject",
            actor=actor,
            target_phone=request.phone,
            target_resource=f"feature_request:{request_id}",
            payload={"reason": reason},
            session=session,
        )
        rejected = _load_request(session, request_id)

    logger.info("[feature-request] rejected", extra={"request_ref": request_id, "reason": reason})
    return rejected


def resend_payment_link(
    request_id: str,
    *,
    actor: Optional[AdminActor] = None,
    notifier: Optional[Notifier] = None,
    settings_obj: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> FeatureRequest:
    """Send the stored link again. Unlike approval, a delivery failure is reported."""
    current = normalize_now(now)
    with get_db_session() as session:
        request = _load_request(session, request_id)
    if request.status != RequestStatus.PAYMENT_SENT:
        raise InvalidStateError(
            f"Payment link can only be resent for PAYMENT_SENT requests (current: {request.status.value})",
            current_status=request.status.value,
        )
    if request.payment_expires_at and request.payment_expires_at <= current:
        raise InvalidStateError("Payment link has expired", current_status=request.status.value)

    sender = notifier or get_notifier(settings_obj or settings)
    try:
        sender.send_payment_link(
            phone=request.phone,
            name=request.name,
            description=describe_features(request.approved_features),
            url=request.payment_url or "",
            amount=request.payment_amount or 0.0,
            request_id=request.id,
        )
    except Exception as e:
        raise ExternalServiceError(f"Could not resend payment link: {e}") from e

    record_admin_action(
        action="feature_request.resend_link",
        actor=actor,
        target_phone=request.phone,
        target_resource=f"feature_request:{request_id}",
    )
    logger.info("[feature-request] payment link resent", extra={"request_ref": request_id})
    return request


# ---------------------------------------------------------------------------
# payment signals
# ---------------------------------------------------------------------------

def _request_by_order(session, order_id: str) -> FeatureRequest:
    row = session.execute(select(feature_requests).where(feature_requests.c.order_id == order_id)).first()
    if row is None:
        raise NotFoundError(f"No feature request for order {order_id}")
    return FeatureRequest.from_row(row)


def confirm_payment(
    order_id: str,
    payment_id: str,
    *,
    coupons: Optional[CouponValidator] = None,
    now: Optional[datetime] = None,
) -> PaymentConfirmation:
    """Create the grants for a paid order and complete the request.

    Idempotent under repeated delivery: once the order is COMPLETED, later
    calls return the existing grants with ``already_processed=True``.
    """
    if not order_id or not payment_id:
        raise ValidationError("order_id and payment_id are required")
    current = normalize_now(now)

    with get_db_session() as session:
        request = _request_by_order(session, order_id)
    if request.status == RequestStatus.COMPLETED:
        return PaymentConfirmation(request=request, access=list_access_for_request(request.id), already_processed=True)
    if request.status != RequestStatus.PAYMENT_SENT or request.is_deleted:
        raise InvalidStateError(
            f"Cannot confirm payment for request with status: {request.display_status}",
            current_status=request.display_status,
        )
    if request.payment_expires_at and current > request.payment_expires_at:
        with get_db_session() as session:
            session.execute(
                update(feature_requests)
                .where(feature_requests.c.id == request.id)
                .values(last_payment_error=f"Payment {payment_id} received after the link expired", updated_at=current)
            )
        logger.error(
            "[feature-request] payment after link expiry",
            extra={"order_id": order_id, "payment_id": payment_id, "expired_at": request.payment_expires_at.isoformat()},
        )
        raise InvalidStateError(
            "Payment link has expired",
            code="payment_link_expired",
            current_status=request.display_status,
            details={"order_id": order_id, "payment_id": payment_id},
        )

    features = list(request.approved_features)
    feature_snapshots = request.pricing_snapshot.get("features", {})
    weights = [float(feature_snapshots.get(k, {}).get("allocation_weight") or 0) for k in features]
    shares = allocate_amount(request.payment_amount or 0.0, weights)
    bundle_id = request.pricing_snapshot.get("bundle_id")
    validator = coupons or DatabaseCouponValidator(now=current)
    # the database validator counts the use in the completion transaction
    redeem_in_transaction = isinstance(validator, DatabaseCouponValidator)

    try:
        with get_db_session() as session:
            _transition(
                session,
                request.id,
                RequestStatus.PAYMENT_SENT,
                status=RequestStatus.COMPLETED.value,
                payment_id=payment_id,
                completed_at=current,
                updated_at=current,
            )
            created: List[UserFeatureAccess] = []
            for key, share in zip(features, shares):
                snapshot = dict(feature_snapshots.get(key, {}))
                snapshot.pop("allocation_weight", None)
                snapshot["approved_duration_in_days"] = request.duration_in_days
                created.append(
                    insert_access_record(
                        session,
                        phone=request.phone,
                        feature_key=key,
                        order_id=f"{order_id}_{key}",
                        request_order_id=order_id,
                        start_date=current,
                        duration_in_days=request.duration_in_days,
                        source=AccessSource.REQUEST,
                        status=AccessStatus.ACTIVE,
                        payment_status=PaymentStatus.SUCCESS,
                        amount_paid=share,
                        pricing_snapshot=snapshot,
                        feature_request_id=request.id,
                        feature_pricing_id=snapshot.get("pricing_id"),
                        payment_id=payment_id,
                    )
                )
            if bundle_id:
                increment_purchase_count(bundle_id, session=session)
            else:
                for record in created:
                    if record.feature_pricing_id:
                        increment_purchase_count(record.feature_pricing_id, session=session)
            if request.coupon_code and redeem_in_transaction:
                validator.record_redemption(request.coupon_code, session=session)
            session.execute(
                update(feature_requests)
                .where(feature_requests.c.id == request.id)
                .values(user_feature_access_ids=[r.id for r in created])
            )
            completed = _load_request(session, request.id)
    except (InvalidStateError, IntegrityError) as e:
        # a concurrent delivery completed the order first
        with get_db_session() as session:
            latest = _request_by_order(session, order_id)
        if latest.status == RequestStatus.COMPLETED:
            logger.info("[feature-request] payment already processed", extra={"order_id": order_id})
            return PaymentConfirmation(request=latest, access=list_access_for_request(latest.id), already_processed=True)
        if isinstance(e, InvalidStateError):
            raise
        raise InternalError(f"Could not record access for order {order_id}") from e

    if request.coupon_code and not redeem_in_transaction:
        try:
            validator.record_redemption(request.coupon_code)
        except Exception:
            logger.error(
                "[feature-request] coupon redemption not recorded",
                exc_info=True,
                extra={"order_id": order_id, "coupon_code": request.coupon_code},
            )

    logger.info(
        "[feature-request] payment confirmed",
        extra={"order_id": order_id, "payment_id": payment_id, "access_ids": [r.id for r in created]},
    )
    return PaymentConfirmation(request=completed, access=created)


def record_payment_failure(order_id: str, reason: Optional[str] = None) -> FeatureRequest:
    """Keep the request in PAYMENT_SENT (the link stays usable) and remember why it failed."""
    with get_db_session() as session:
        request = _request_by_order(session, order_id)
        if request.status != RequestStatus.PAYMENT_SENT:
            logger.info(
                "[feature-request] payment failure ignored",
                extra={"order_id": order_id, "status": request.status.value},
            )
            return request
        session.execute(
            update(feature_requests)
            .where(feature_requests.c.id == request.id)
            .values(last_payment_error=reason or "Payment failed", updated_at=normalize_now(None))
        )
        updated = _load_request(session, request.id)
    logger.warning("[feature-request] payment failed", extra={"order_id": order_id, "reason": reason})
    return updated


def expire_payment_links(*, provider: Optional[PaymentProvider] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Deactivate gateway links for PAYMENT_SENT requests whose payment window has closed.

    The request stays PAYMENT_SENT with ``last_payment_error`` set; payments
    reported after the window are refused by confirm_payment. A gateway
    failure leaves the row for the next run.
    """
    current = normalize_now(now)
    with get_db_session() as session:
        rows = session.execute(
            select(feature_requests).where(
                and_(
                    feature_requests.c.status == RequestStatus.PAYMENT_SENT.value,
                    feature_requests.c.is_deleted.is_(False),
                    feature_requests.c.payment_link_id.isnot(None),
                    feature_requests.c.payment_expires_at <= current,
                    feature_requests.c.payment_link_deactivated_at.is_(None),
                )
            )
        ).fetchall()

    gateway = provider or get_payment_provider()
    deactivated = 0
    failed = 0
    for request in (FeatureRequest.from_row(r) for r in rows):
        try:
            gateway.deactivate_payment_link(request.payment_link_id)
        except PaymentProviderError as e:
            failed += 1
            logger.warning(
                "[feature-request] payment link deactivation failed",
                extra={"request_ref": request.id, "order_id": request.order_id, "error_message": str(e)},
            )
            continue
        with get_db_session() as session:
            result = session.execute(
                update(feature_requests)
                .where(
                    and_(
                        feature_requests.c.id == request.id,
                        feature_requests.c.status == RequestStatus.PAYMENT_SENT.value,
                        feature_requests.c.payment_link_deactivated_at.is_(None),
                    )
                )
                .values(payment_link_deactivated_at=current, last_payment_error="Payment link expired", updated_at=current)
            )
            deactivated += result.rowcount or 0

    logger.info(
        "[feature-request] payment link sweep complete",
        extra={"deactivated": deactivated, "failed": failed},
    )
    return {"deactivated": deactivated, "failed": failed, "ran_at": current.isoformat()}


# ---------------------------------------------------------------------------
# queries
# ---------------------------------------------------------------------------

def get_request(request_id: str, *, include_deleted: bool = False) -> FeatureRequest:
    with get_db_session() as session:
        return _load_request(session, request_id, include_deleted=include_deleted)


def pending_count() -> int:
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(feature_requests).where(
                and_(
                    feature_requests.c.status == RequestStatus.PENDING.value,
                    feature_requests.c.is_deleted.is_(False),
                )
            )
        ).scalar() or 0


def list_requests(
    *,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    search: Optional[str] = None,
    feature_key: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    include_deleted: bool = False,
) -> Dict[str, Any]:
    """Paginated operator listing with status/search/feature filters."""
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100")
    if sort_by not in SORTABLE_FIELDS:
        raise ValidationError(f"sort_by must be one of: {', '.join(SORTABLE_FIELDS)}")

    conditions = []
    if not include_deleted:
        conditions.append(feature_requests.c.is_deleted.is_(False))
    if status:
        try:
            conditions.append(feature_requests.c.status == RequestStatus(status.upper()).value)
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
    if search:
        term = f"%{search.strip()}%"
        conditions.append(or_(feature_requests.c.phone.like(term), feature_requests.c.name.ilike(term)))
    if feature_key:
        key = normalize_feature_key(feature_key)
        conditions.append(cast(feature_requests.c.requested_features, String).like(f'%"{key}"%'))

    column = feature_requests.c[sort_by]
    order = column.asc() if sort_order.lower() == "asc" else column.desc()

    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(feature_requests).where(and_(True, *conditions))
        ).scalar() or 0
        rows = session.execute(
            select(feature_requests)
            .where(and_(True, *conditions))
            .order_by(order)
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()

    total_pages = (total + limit - 1) // limit if total else 0
    return {
        "items": [FeatureRequest.from_row(r) for r in rows],
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_items": total,
            "items_per_page": limit,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
        },
    }
