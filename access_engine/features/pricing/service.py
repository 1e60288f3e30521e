"""
Pricing catalog service.

Handles:
- Operator CRUD on offers (single features and bundles), soft delete/restore
- Catalog queries for the public pricing page and the request workflow
- Purchase counters, moved only by entitlement creation and refund
"""
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from access_engine.core.admin_auth import AdminActor
from access_engine.core.database import feature_pricing, get_db_session, session_scope
from access_engine.core.errors import ConflictError, NotFoundError, ValidationError
from access_engine.features.audit.service import record_admin_action, resolve_actor_id
from access_engine.models.common import FEATURE_KEYS, money, normalize_feature_key, require_known_features, utc_now
from access_engine.models.feature_pricing import (
    FeaturePricing,
    PricingCreate,
    PricingUpdate,
    is_lifetime_duration,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Fields where an explicit null is meaningful (clears the value).
_NULLABLE_UPDATE_FIELDS = {"description", "compare_at_price", "duration_in_days", "max_purchases"}


def _coerce(model_cls: Type[M], data: Any) -> M:
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        message = first.get("msg", "Invalid pricing data")
        raise ValidationError(f"{field}: {message}" if field else message, details={"field": field or None})


def _check_price_invariant(price: float, compare_at_price: Optional[float]) -> None:
    if compare_at_price is not None and compare_at_price < price:
        raise ValidationError(
            "compare_at_price must be greater than or equal to price",
            details={"price": price, "compare_at_price": compare_at_price},
        )


def _check_bundle_shape(feature_key: str, is_bundle: bool, included: List[str]) -> List[str]:
    if is_bundle:
        if not included:
            raise ValidationError("Bundle must include at least one feature", details={"field": "included_features"})
        keys = require_known_features(included)
        if feature_key in FEATURE_KEYS:
            raise ValidationError(
                f"Bundle key {feature_key} collides with a single-feature key",
                details={"field": "feature_key"},
            )
        return keys
    if feature_key not in FEATURE_KEYS:
        raise ValidationError(
            f"Invalid feature: {feature_key}. Valid features are: {', '.join(FEATURE_KEYS)}",
            details={"field": "feature_key"},
        )
    if included:
        raise ValidationError("Only bundles may list included_features", details={"field": "included_features"})
    return []


def _load(session, pricing_id: str, *, include_deleted: bool = False) -> FeaturePricing:
    stmt = select(feature_pricing).where(feature_pricing.c.id == pricing_id)
    if not include_deleted:
        stmt = stmt.where(feature_pricing.c.is_deleted.is_(False))
    row = session.execute(stmt).first()
    if row is None:
        raise NotFoundError(f"Pricing {pricing_id} not found")
    return FeaturePricing.from_row(row)


def create_pricing(data: PricingCreate | Dict[str, Any], *, actor: Optional[AdminActor] = None) -> FeaturePricing:
    """Create an offer.

    Raises:
        ValidationError: bad shape, empty bundle, compare_at_price below price
        ConflictError: an offer with this feature_key already exists (restore it instead)
    """
    payload = _coerce(PricingCreate, data)
    feature_key = normalize_feature_key(payload.feature_key)
    included = _check_bundle_shape(feature_key, payload.is_bundle, payload.included_features)
    _check_price_invariant(payload.price, payload.compare_at_price)

    now = utc_now()
    values = {
        "id": str(uuid.uuid4()),
        "feature_key": feature_key,
        "name": payload.name.strip(),
        "description": payload.description,
        "price": money(payload.price),
        "compare_at_price": money(payload.compare_at_price) if payload.compare_at_price is not None else None,
        "duration_in_days": payload.duration_in_days,
        "is_lifetime": is_lifetime_duration(payload.duration_in_days),
        "is_bundle": payload.is_bundle,
        "included_features": included,
        "perks": list(payload.perks),
        "metadata_json": dict(payload.metadata),
        "display_order": payload.display_order,
        "is_featured": payload.is_featured,
        "is_active": payload.is_active,
        "max_purchases": payload.max_purchases,
        "current_purchases": 0,
        "created_by": resolve_actor_id(actor, default=None),
        "updated_by": resolve_actor_id(actor, default=None),
        "is_deleted": False,
        "created_at": now,
        "updated_at": now,
    }

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(feature_pricing.c.id, feature_pricing.c.is_deleted).where(
                    feature_pricing.c.feature_key == feature_key
                )
            ).first()
            if existing is not None:
                hint = " (soft-deleted; restore it instead)" if existing.is_deleted else ""
                raise ConflictError(
                    f"Pricing for {feature_key} already exists{hint}",
                    details={"existing_pricing_id": existing.id},
                )
            session.execute(insert(feature_pricing).values(**values))
            record_admin_action(
                action="pricing.create",
                actor=actor,
                target_resource=f"feature_pricing:{values['id']}",
                payload={"feature_key": feature_key, "price": values["price"]},
                session=session,
            )
    except IntegrityError:
        raise ConflictError(f"Pricing for {feature_key} already exists")

    logger.info("[pricing] created", extra={"pricing_id": values["id"], "feature_key": feature_key})
    return FeaturePricing.model_validate(values)


def update_pricing(
    pricing_id: str,
    changes: PricingUpdate | Dict[str, Any],
    *,
    actor: Optional[AdminActor] = None,
) -> FeaturePricing:
    """Apply a partial update, revalidating the merged record.

    compare_at_price >= price is checked on every update against the merged
    values; an update that would break it is rejected unless it also clears
    compare_at_price.
    """
    payload = _coerce(PricingUpdate, changes)
    updates = {
        k: v for k, v in payload.model_dump(exclude_unset=True).items()
        if v is not None or k in _NULLABLE_UPDATE_FIELDS
    }
    if not updates:
        raise ValidationError("No fields to update")

    with get_db_session() as session:
        current = _load(session, pricing_id)
        merged = current.model_dump()
        merged.update(updates)

        _check_price_invariant(merged["price"], merged["compare_at_price"])
        if "included_features" in updates:
            if not current.is_bundle:
                raise ValidationError("Only bundles may list included_features", details={"field": "included_features"})
            updates["included_features"] = _check_bundle_shape(
                current.feature_key, True, updates["included_features"]
            )
        if "max_purchases" in updates and updates["max_purchases"] is not None \
                and updates["max_purchases"] < current.current_purchases:
            raise ValidationError(
                "max_purchases cannot be lower than purchases already made",
                details={"current_purchases": current.current_purchases},
            )

        values = dict(updates)
        if "metadata" in values:
            values["metadata_json"] = values.pop("metadata")
        if "price" in values:
            values["price"] = money(values["price"])
        if values.get("compare_at_price") is not None:
            values["compare_at_price"] = money(values["compare_at_price"])
        if "duration_in_days" in values:
            values["is_lifetime"] = is_lifetime_duration(values["duration_in_days"])
        values["updated_by"] = resolve_actor_id(actor, default=None)
        values["updated_at"] = utc_now()

        session.execute(update(feature_pricing).where(feature_pricing.c.id == pricing_id).values(**values))
        record_admin_action(
            action="pricing.update",
            actor=actor,
            target_resource=f"feature_pricing:{pricing_id}",
            payload={k: v for k, v in updates.items()},
            session=session,
        )
        updated = _load(session, pricing_id)

    logger.info("[pricing] updated", extra={"pricing_id": pricing_id, "fields": sorted(updates)})
    return updated


def delete_pricing(pricing_id: str, *, actor: Optional[AdminActor] = None) -> FeaturePricing:
    """Soft-delete an offer. Existing entitlements keep their pricing snapshot."""
    now = utc_now()
    with get_db_session() as session:
        _load(session, pricing_id)
        session.execute(
            update(feature_pricing)
            .where(feature_pricing.c.id == pricing_id)
            .values(is_deleted=True, is_active=False, deleted_at=now, deleted_by=resolve_actor_id(actor, default=None), updated_at=now)
        )
        record_admin_action(
            action="pricing.delete", actor=actor, target_resource=f"feature_pricing:{pricing_id}", session=session
        )
        deleted = _load(session, pricing_id, include_deleted=True)
    logger.info("[pricing] soft-deleted", extra={"pricing_id": pricing_id})
    return deleted


def restore_pricing(pricing_id: str, *, actor: Optional[AdminActor] = None) -> FeaturePricing:
    with get_db_session() as session:
        current = _load(session, pricing_id, include_deleted=True)
        if not current.is_deleted:
            raise ConflictError("Pricing is not deleted")
        session.execute(
            update(feature_pricing)
            .where(feature_pricing.c.id == pricing_id)
            .values(is_deleted=False, deleted_at=None, deleted_by=None, updated_by=resolve_actor_id(actor, default=None), updated_at=utc_now())
        )
        record_admin_action(
            action="pricing.restore", actor=actor, target_resource=f"feature_pricing:{pricing_id}", session=session
        )
        restored = _load(session, pricing_id)
    logger.info("[pricing] restored", extra={"pricing_id": pricing_id})
    return restored


def get_pricing(pricing_id: str, *, include_deleted: bool = False, session=None) -> FeaturePricing:
    with session_scope(session) as s:
        return _load(s, pricing_id, include_deleted=include_deleted)


def _sorted_catalog(items: Iterable[FeaturePricing]) -> List[FeaturePricing]:
    # display_order ascending, newest first within the same order
    by_recency = sorted(items, key=lambda p: p.created_at.timestamp() if p.created_at else 0, reverse=True)
    return sorted(by_recency, key=lambda p: p.display_order)


def find_active(*, include_inactive: bool = False, include_deleted: bool = False, session=None) -> List[FeaturePricing]:
    stmt = select(feature_pricing)
    if not include_deleted:
        stmt = stmt.where(feature_pricing.c.is_deleted.is_(False))
    if not include_inactive:
        stmt = stmt.where(feature_pricing.c.is_active.is_(True))
    with session_scope(session) as s:
        rows = s.execute(stmt).fetchall()
    return _sorted_catalog(FeaturePricing.from_row(r) for r in rows)


def find_by_feature_key(feature_key: str, *, session=None) -> Optional[FeaturePricing]:
    """Active, non-deleted offer for a key (single feature or bundle)."""
    key = normalize_feature_key(feature_key)
    stmt = select(feature_pricing).where(
        and_(
            feature_pricing.c.feature_key == key,
            feature_pricing.c.is_active.is_(True),
            feature_pricing.c.is_deleted.is_(False),
        )
    )
    with session_scope(session) as s:
        row = s.execute(stmt).first()
    return FeaturePricing.from_row(row) if row else None


def find_bundles_for_features(feature_keys: Iterable[str], *, session=None) -> List[FeaturePricing]:
    """Active bundles whose included features cover every requested key, cheapest first."""
    wanted = {normalize_feature_key(k) for k in feature_keys}
    stmt = select(feature_pricing).where(
        and_(
            feature_pricing.c.is_bundle.is_(True),
            feature_pricing.c.is_active.is_(True),
            feature_pricing.c.is_deleted.is_(False),
        )
    )
    with session_scope(session) as s:
        rows = s.execute(stmt).fetchall()
    bundles = [FeaturePricing.from_row(r) for r in rows]
    return sorted(
        (b for b in bundles if wanted.issubset(set(b.included_features))),
        key=lambda b: b.price,
    )


def list_featured() -> List[FeaturePricing]:
    return [p for p in find_active() if p.is_featured]


def get_public_pricing() -> Dict[str, Any]:
    """Pricing page payload: available single features and bundles."""
    offers = [p for p in find_active() if p.is_available]
    return {
        "features": [p.summary() for p in offers if not p.is_bundle],
        "bundles": [p.summary() for p in offers if p.is_bundle],
    }


def increment_purchase_count(pricing_id: str, *, session=None) -> None:
    with session_scope(session) as s:
        s.execute(
            update(feature_pricing)
            .where(feature_pricing.c.id == pricing_id)
            .values(current_purchases=feature_pricing.c.current_purchases + 1)
        )


def decrement_purchase_count(pricing_id: str, *, session=None) -> None:
    with session_scope(session) as s:
        s.execute(
            update(feature_pricing)
            .where(and_(feature_pricing.c.id == pricing_id, feature_pricing.c.current_purchases > 0))
            .values(current_purchases=feature_pricing.c.current_purchases - 1)
        )
