"""
Feature gates and the entitlement record store.

Handles:
- Gate lookup/upsert and idempotent seeding of the default gates
- Creating grants (workflow completions, operator grants, promotions)
- Lifecycle transitions: activate, cancel, refund, extend, soft delete, restore
- Read queries by phone/feature, expiring-soon listing
- The expiry sweep (persisted EXPIRED is a reporting cache only)
"""
import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, insert, or_, select, update

from access_engine.core.admin_auth import AdminActor
from access_engine.core.config import settings
from access_engine.core.database import feature_gates, get_db_session, session_scope, user_feature_access
from access_engine.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from access_engine.features.audit.service import record_admin_action, resolve_actor_id
from access_engine.features.pricing.service import decrement_purchase_count, find_by_feature_key
from access_engine.models.common import (
    money,
    normalize_feature_key,
    normalize_now,
    normalize_phone,
    require_known_features,
    utc_now,
)
from access_engine.models.feature_gate import DEFAULT_FEATURE_GATES, FeatureGate
from access_engine.models.user_feature_access import (
    AccessSource,
    AccessStatus,
    PaymentStatus,
    UserFeatureAccess,
)

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_order_id(prefix: str) -> str:
    """``<PREFIX>_<epoch ms>_<9 base36 chars>``"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


# ---------------------------------------------------------------------------
# Feature gates
# ---------------------------------------------------------------------------

def get_feature_gate(feature_key: str, *, session=None) -> Optional[FeatureGate]:
    key = normalize_feature_key(feature_key)
    with session_scope(session) as s:
        row = s.execute(select(feature_gates).where(feature_gates.c.feature_key == key)).first()
    return FeatureGate.from_row(row) if row else None


def list_feature_gates() -> List[FeatureGate]:
    with get_db_session() as session:
        rows = session.execute(select(feature_gates).order_by(feature_gates.c.feature_key)).fetchall()
    return [FeatureGate.from_row(r) for r in rows]


def upsert_feature_gate(
    feature_key: str,
    *,
    feature_name: Optional[str] = None,
    description: Optional[str] = None,
    requires_membership: Optional[bool] = None,
    is_active: Optional[bool] = None,
    actor: Optional[AdminActor] = None,
) -> FeatureGate:
    key = require_known_features([feature_key])[0]
    now = utc_now()
    changes = {
        k: v for k, v in {
            "feature_name": feature_name,
            "description": description,
            "requires_membership": requires_membership,
            "is_active": is_active,
        }.items() if v is not None
    }

    with get_db_session() as session:
        existing = session.execute(select(feature_gates).where(feature_gates.c.feature_key == key)).first()
        if existing is None:
            values = {
                "feature_key": key,
                "feature_name": feature_name or key.title(),
                "description": description,
                "requires_membership": True if requires_membership is None else requires_membership,
                "is_active": True if is_active is None else is_active,
                "created_at": now,
                "updated_at": now,
            }
            session.execute(insert(feature_gates).values(**values))
        elif changes:
            session.execute(
                update(feature_gates).where(feature_gates.c.feature_key == key).values(**changes, updated_at=now)
            )
        record_admin_action(
            action="feature_gate.upsert",
            actor=actor,
            target_resource=f"feature_gate:{key}",
            payload=changes,
            session=session,
        )
        row = session.execute(select(feature_gates).where(feature_gates.c.feature_key == key)).first()

    logger.info("[feature-gate] upserted", extra={"feature_key": key, "changes": changes})
    return FeatureGate.from_row(row)


def seed_feature_gates() -> int:
    """Insert the default gates that are missing. Existing gates are left untouched."""
    now = utc_now()
    inserted = 0
    with get_db_session() as session:
        present = {r.feature_key for r in session.execute(select(feature_gates.c.feature_key)).fetchall()}
        for gate in DEFAULT_FEATURE_GATES:
            if gate["feature_key"] in present:
                continue
            session.execute(insert(feature_gates).values(**gate, created_at=now, updated_at=now))
            inserted += 1
    if inserted:
        logger.info("[feature-gate] seeded defaults", extra={"inserted": inserted})
    return inserted


# ---------------------------------------------------------------------------
# Entitlement records
# ---------------------------------------------------------------------------

def _load_access(session, access_id: str, *, include_deleted: bool = True) -> UserFeatureAccess:
    stmt = select(user_feature_access).where(user_feature_access.c.id == access_id)
    if not include_deleted:
        stmt = stmt.where(user_feature_access.c.is_deleted.is_(False))
    row = session.execute(stmt).first()
    if row is None:
        raise NotFoundError(f"Feature access {access_id} not found")
    return UserFeatureAccess.from_row(row)


def _set(session, access_id: str, **values) -> UserFeatureAccess:
    values["updated_at"] = utc_now()
    session.execute(update(user_feature_access).where(user_feature_access.c.id == access_id).values(**values))
    return _load_access(session, access_id)


def insert_access_record(
    session,
    *,
    phone: str,
    feature_key: str,
    order_id: str,
    start_date: datetime,
    duration_in_days: Optional[int],
    source: AccessSource = AccessSource.REQUEST,
    status: AccessStatus = AccessStatus.PENDING,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    amount_paid: float = 0,
    pricing_snapshot: Optional[Dict[str, Any]] = None,
    feature_request_id: Optional[str] = None,
    feature_pricing_id: Optional[str] = None,
    request_order_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    user_id: Optional[str] = None,
    admin_notes: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> UserFeatureAccess:
    """Insert one grant inside the caller's transaction.

    end_date is None exactly when the grant is lifetime (duration None or 0).
    The unique order_id makes a duplicate insert fail with IntegrityError.
    """
    if duration_in_days is not None and duration_in_days < 0:
        raise ValidationError("duration_in_days cannot be negative")
    start = normalize_now(start_date)
    lifetime = not duration_in_days
    values = {
        "id": str(uuid.uuid4()),
        "phone": phone,
        "user_id": user_id,
        "feature_key": feature_key,
        "source": AccessSource(source).value,
        "feature_request_id": feature_request_id,
        "feature_pricing_id": feature_pricing_id,
        "order_id": order_id,
        "request_order_id": request_order_id,
        "payment_id": payment_id,
        "amount_paid": money(amount_paid),
        "start_date": start,
        "end_date": None if lifetime else start + timedelta(days=duration_in_days),
        "is_lifetime": lifetime,
        "status": AccessStatus(status).value,
        "payment_status": PaymentStatus(payment_status).value,
        "pricing_snapshot": dict(pricing_snapshot or {}),
        "admin_notes": admin_notes,
        "metadata_json": dict(metadata or {}),
        "is_deleted": False,
        "created_at": start,
        "updated_at": start,
    }
    session.execute(insert(user_feature_access).values(**values))
    return UserFeatureAccess.model_validate(values)


def create_pending_access(
    phone: str,
    feature_key: str,
    *,
    duration_in_days: Optional[int],
    amount: float = 0,
    source: AccessSource = AccessSource.REQUEST,
    order_id: Optional[str] = None,
    pricing_snapshot: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> UserFeatureAccess:
    """Create a PENDING/PENDING grant that becomes usable once activated."""
    normalized = normalize_phone(phone)
    key = require_known_features([feature_key])[0]
    with get_db_session() as session:
        record = insert_access_record(
            session,
            phone=normalized,
            feature_key=key,
            order_id=order_id or generate_order_id("FA"),
            start_date=normalize_now(now),
            duration_in_days=duration_in_days,
            source=source,
            amount_paid=amount,
            pricing_snapshot=pricing_snapshot,
        )
    logger.info("[feature-access] pending grant created", extra={"access_id": record.id, "feature_key": key})
    return record


def activate_access(
    access_id: str,
    payment_id: str,
    *,
    user_id: Optional[str] = None,
) -> UserFeatureAccess:
    """PENDING -> ACTIVE with payment SUCCESS. Re-activating an active grant is a no-op."""
    with get_db_session() as session:
        current = _load_access(session, access_id, include_deleted=False)
        if current.status == AccessStatus.ACTIVE and current.payment_status == PaymentStatus.SUCCESS:
            return current
        if current.status != AccessStatus.PENDING:
            raise InvalidStateError(
                f"Cannot confirm payment for access in status {current.status.value}",
                current_status=current.status.value,
            )
        values = {"status": AccessStatus.ACTIVE.value, "payment_status": PaymentStatus.SUCCESS.value, "payment_id": payment_id}
        if user_id:
            values["user_id"] = user_id
        updated = _set(session, access_id, **values)
    logger.info("[feature-access] activated", extra={"access_id": access_id, "payment_id": payment_id})
    return updated


def grant_access(
    phone: str,
    feature_key: str,
    *,
    duration_in_days: Optional[int],
    source: AccessSource = AccessSource.ADMIN_GRANT,
    amount_paid: float = 0,
    admin_notes: Optional[str] = None,
    actor: Optional[AdminActor] = None,
    now: Optional[datetime] = None,
) -> UserFeatureAccess:
    """Operator or promotional grant, usable immediately."""
    source = AccessSource(source)
    if source == AccessSource.REQUEST:
        raise ValidationError("Request grants are created by payment confirmation")
    normalized = normalize_phone(phone)
    key = require_known_features([feature_key])[0]
    current = normalize_now(now)

    existing = find_active_access(normalized, key, now=current)
    if existing is not None:
        raise ConflictError(
            f"You already have active access to: {key}",
            details={"features": [key], "existing_access_id": existing.id},
        )

    offer = find_by_feature_key(key)
    snapshot = {"source": source.value, "duration_in_days": duration_in_days, "granted_by": resolve_actor_id(actor, default=None)}
    if offer is not None:
        snapshot.update(offer.snapshot())
        snapshot["duration_in_days"] = duration_in_days

    with get_db_session() as session:
        record = insert_access_record(
            session,
            phone=normalized,
            feature_key=key,
            order_id=generate_order_id("AG"),
            start_date=current,
            duration_in_days=duration_in_days,
            source=source,
            status=AccessStatus.ACTIVE,
            payment_status=PaymentStatus.SUCCESS,
            amount_paid=amount_paid,
            pricing_snapshot=snapshot,
            admin_notes=admin_notes,
        )
        record_admin_action(
            action="feature_access.grant",
            actor=actor,
            target_phone=normalized,
            target_resource=f"user_feature_access:{record.id}",
            payload={"feature_key": key, "duration_in_days": duration_in_days, "source": source.value},
            session=session,
        )
    logger.info(
        "[feature-access] granted",
        extra={"access_id": record.id, "phone": normalized, "feature_key": key, "source": source.value},
    )
    return record


def cancel_access(access_id: str, *, actor: Optional[AdminActor] = None, reason: Optional[str] = None) -> UserFeatureAccess:
    with get_db_session() as session:
        current = _load_access(session, access_id, include_deleted=False)
        if current.is_terminal:
            raise InvalidStateError(
                f"Access is already {current.status.value}", current_status=current.status.value
            )
        updated = _set(
            session,
            access_id,
            status=AccessStatus.CANCELLED.value,
            cancelled_at=utc_now(),
            cancelled_by=resolve_actor_id(actor, default=None),
            cancellation_reason=reason,
        )
        record_admin_action(
            action="feature_access.cancel",
            actor=actor,
            target_phone=current.phone,
            target_resource=f"user_feature_access:{access_id}",
            payload={"reason": reason},
            session=session,
        )
    logger.info("[feature-access] cancelled", extra={"access_id": access_id, "reason": reason})
    return updated


def refund_access(
    access_id: str,
    *,
    actor: Optional[AdminActor | str] = None,
    reason: Optional[str] = None,
    session=None,
) -> UserFeatureAccess:
    """Mark a grant REFUNDED (status and payment status) and release its purchase slot."""
    with session_scope(session) as s:
        current = _load_access(s, access_id)
        if current.status == AccessStatus.REFUNDED:
            return current
        if current.status == AccessStatus.CANCELLED:
            raise InvalidStateError("Cancelled access cannot be refunded", current_status=current.status.value)
        updated = _set(
            s,
            access_id,
            status=AccessStatus.REFUNDED.value,
            payment_status=PaymentStatus.REFUNDED.value,
            cancellation_reason=reason,
        )
        # bundle slots are released once per order by refund_order
        if (
            current.feature_pricing_id
            and current.payment_status == PaymentStatus.SUCCESS
            and not current.pricing_snapshot.get("is_bundle")
        ):
            decrement_purchase_count(current.feature_pricing_id, session=s)
        record_admin_action(
            action="feature_access.refund",
            actor=actor,
            target_phone=current.phone,
            target_resource=f"user_feature_access:{access_id}",
            payload={"reason": reason},
            session=s,
        )
    logger.info("[feature-access] refunded", extra={"access_id": access_id})
    return updated


def refund_order(request_order_id: str, *, reason: Optional[str] = None) -> List[UserFeatureAccess]:
    """Refund every grant created for one request order (payment reversal)."""
    with get_db_session() as session:
        rows = session.execute(
            select(user_feature_access).where(user_feature_access.c.request_order_id == request_order_id)
        ).fetchall()
        if not rows:
            raise NotFoundError(f"No feature access found for order {request_order_id}")
        records = [UserFeatureAccess.from_row(r) for r in rows]
        bundle_ids = {
            r.feature_pricing_id
            for r in records
            if r.feature_pricing_id and r.payment_status == PaymentStatus.SUCCESS and r.pricing_snapshot.get("is_bundle")
        }
        refunded = [
            refund_access(r.id, actor="payment-provider", reason=reason or "Payment refunded", session=session)
            for r in records
            if r.status != AccessStatus.CANCELLED
        ]
        for bundle_id in bundle_ids:
            decrement_purchase_count(bundle_id, session=session)
    logger.info("[feature-access] order refunded", extra={"order_id": request_order_id, "count": len(refunded)})
    return refunded


def extend_access(
    access_id: str,
    additional_days: int,
    *,
    actor: Optional[AdminActor] = None,
    now: Optional[datetime] = None,
) -> UserFeatureAccess:
    """Push end_date out by ``additional_days``.

    Lifetime and cancelled/refunded grants cannot be extended. A grant the
    sweeper had marked EXPIRED goes back to ACTIVE when the new end date is
    in the future.
    """
    if additional_days is None or additional_days <= 0:
        raise ValidationError("additional_days must be a positive integer")
    current_time = normalize_now(now)
    with get_db_session() as session:
        current = _load_access(session, access_id, include_deleted=False)
        if current.is_lifetime:
            raise InvalidStateError("Lifetime access cannot be extended", current_status=current.status.value)
        if current.is_terminal:
            raise InvalidStateError(
                f"Cannot extend access in status {current.status.value}", current_status=current.status.value
            )
        new_end = current.end_date + timedelta(days=additional_days)
        values: Dict[str, Any] = {"end_date": new_end}
        if current.status == AccessStatus.EXPIRED and new_end > current_time:
            values["status"] = AccessStatus.ACTIVE.value
        updated = _set(session, access_id, **values)
        record_admin_action(
            action="feature_access.extend",
            actor=actor,
            target_phone=current.phone,
            target_resource=f"user_feature_access:{access_id}",
            payload={"additional_days": additional_days, "end_date": new_end.isoformat()},
            session=session,
        )
    logger.info("[feature-access] extended", extra={"access_id": access_id, "additional_days": additional_days})
    return updated


def soft_delete_access(access_id: str, *, actor: Optional[AdminActor] = None) -> UserFeatureAccess:
    now = utc_now()
    with get_db_session() as session:
        current = _load_access(session, access_id, include_deleted=False)
        values: Dict[str, Any] = {"is_deleted": True, "deleted_at": now, "deleted_by": resolve_actor_id(actor, default=None)}
        if current.status in (AccessStatus.ACTIVE, AccessStatus.PENDING):
            values.update(
                status=AccessStatus.CANCELLED.value,
                cancelled_at=now,
                cancelled_by=resolve_actor_id(actor, default=None),
                cancellation_reason="Deleted by admin",
            )
        updated = _set(session, access_id, **values)
        record_admin_action(
            action="feature_access.delete",
            actor=actor,
            target_phone=current.phone,
            target_resource=f"user_feature_access:{access_id}",
            session=session,
        )
    logger.info("[feature-access] soft-deleted", extra={"access_id": access_id})
    return updated


def restore_access(access_id: str, *, actor: Optional[AdminActor] = None) -> UserFeatureAccess:
    """Undo a soft delete. A grant cancelled by the delete stays CANCELLED."""
    with get_db_session() as session:
        current = _load_access(session, access_id)
        if not current.is_deleted:
            raise ConflictError("Access is not deleted")
        updated = _set(session, access_id, is_deleted=False, deleted_at=None, deleted_by=None)
        record_admin_action(
            action="feature_access.restore",
            actor=actor,
            target_phone=current.phone,
            target_resource=f"user_feature_access:{access_id}",
            session=session,
        )
    logger.info("[feature-access] restored", extra={"access_id": access_id})
    return updated


def update_pricing_snapshot(access_id: str, snapshot: Dict[str, Any]) -> UserFeatureAccess:
    """Replace the snapshot while payment is still pending; frozen once paid."""
    with get_db_session() as session:
        current = _load_access(session, access_id)
        if current.payment_status == PaymentStatus.SUCCESS:
            raise ConflictError("Pricing snapshot is immutable once payment has succeeded")
        return _set(session, access_id, pricing_snapshot=dict(snapshot))


def get_access(access_id: str) -> UserFeatureAccess:
    with get_db_session() as session:
        return _load_access(session, access_id)


def _active_clause(current: datetime):
    return and_(
        user_feature_access.c.is_deleted.is_(False),
        user_feature_access.c.payment_status == PaymentStatus.SUCCESS.value,
        user_feature_access.c.status == AccessStatus.ACTIVE.value,
        user_feature_access.c.start_date <= current,
        or_(user_feature_access.c.is_lifetime.is_(True), user_feature_access.c.end_date > current),
    )


def find_active_access(
    phone: str, feature_key: str, *, now: Optional[datetime] = None, session=None
) -> Optional[UserFeatureAccess]:
    """Most generous currently-active grant for (phone, feature), or None."""
    current = normalize_now(now)
    stmt = select(user_feature_access).where(
        and_(
            user_feature_access.c.phone == phone,
            user_feature_access.c.feature_key == feature_key,
            _active_clause(current),
        )
    )
    with session_scope(session) as s:
        rows = s.execute(stmt).fetchall()
    active = [r for r in (UserFeatureAccess.from_row(row) for row in rows) if r.is_currently_active(current)]
    if not active:
        return None
    return sorted(active, key=lambda r: (not r.is_lifetime, -(r.end_date.timestamp() if r.end_date else 0)))[0]


def find_active_by_phone(phone: str, *, now: Optional[datetime] = None) -> List[UserFeatureAccess]:
    current = normalize_now(now)
    normalized = normalize_phone(phone)
    stmt = select(user_feature_access).where(
        and_(user_feature_access.c.phone == normalized, _active_clause(current))
    )
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [r for r in (UserFeatureAccess.from_row(row) for row in rows) if r.is_currently_active(current)]


def active_feature_keys(phone: str, *, now: Optional[datetime] = None, session=None) -> Dict[str, str]:
    """feature_key -> access id for every currently-active grant of a phone."""
    current = normalize_now(now)
    stmt = select(user_feature_access).where(
        and_(user_feature_access.c.phone == phone, _active_clause(current))
    )
    with session_scope(session) as s:
        rows = s.execute(stmt).fetchall()
    result: Dict[str, str] = {}
    for row in rows:
        record = UserFeatureAccess.from_row(row)
        if record.is_currently_active(current):
            result.setdefault(record.feature_key, record.id)
    return result


def list_access_by_phone(phone: str, *, include_deleted: bool = False) -> List[UserFeatureAccess]:
    normalized = normalize_phone(phone)
    stmt = select(user_feature_access).where(user_feature_access.c.phone == normalized)
    if not include_deleted:
        stmt = stmt.where(user_feature_access.c.is_deleted.is_(False))
    stmt = stmt.order_by(user_feature_access.c.created_at.desc())
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [UserFeatureAccess.from_row(r) for r in rows]


def list_access_for_request(request_id: str) -> List[UserFeatureAccess]:
    stmt = (
        select(user_feature_access)
        .where(user_feature_access.c.feature_request_id == request_id)
        .order_by(user_feature_access.c.feature_key)
    )
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [UserFeatureAccess.from_row(r) for r in rows]


def find_expiring_soon(*, days: Optional[int] = None, now: Optional[datetime] = None) -> List[UserFeatureAccess]:
    """Active, non-lifetime grants ending within ``days`` (soonest first)."""
    window = days if days is not None else settings.EXPIRING_SOON_DAYS
    current = normalize_now(now)
    horizon = current + timedelta(days=window)
    stmt = (
        select(user_feature_access)
        .where(
            and_(
                user_feature_access.c.is_deleted.is_(False),
                user_feature_access.c.status == AccessStatus.ACTIVE.value,
                user_feature_access.c.payment_status == PaymentStatus.SUCCESS.value,
                user_feature_access.c.is_lifetime.is_(False),
                user_feature_access.c.end_date > current,
                user_feature_access.c.end_date <= horizon,
            )
        )
        .order_by(user_feature_access.c.end_date.asc())
    )
    with get_db_session() as session:
        rows = session.execute(stmt).fetchall()
    return [UserFeatureAccess.from_row(r) for r in rows]


def expire_lapsed_access(*, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Persist EXPIRED on lapsed ACTIVE+SUCCESS, non-lifetime, non-deleted grants.

    Idempotent and safe to run concurrently: a second run matches nothing.
    """
    current = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(user_feature_access)
            .where(
                and_(
                    user_feature_access.c.is_deleted.is_(False),
                    user_feature_access.c.status == AccessStatus.ACTIVE.value,
                    user_feature_access.c.payment_status == PaymentStatus.SUCCESS.value,
                    user_feature_access.c.is_lifetime.is_(False),
                    user_feature_access.c.end_date <= current,
                )
            )
            .values(status=AccessStatus.EXPIRED.value, updated_at=current)
        )
        expired = result.rowcount or 0

    logger.info("[feature-access] expiry sweep", extra={"expired": expired, "ran_at": current.isoformat()})
    return {"expired": expired, "ran_at": current.isoformat()}
