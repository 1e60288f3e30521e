"""
Pricing catalog routes.

Public:
- GET /api/feature-requests/pricing: active individual offers and bundles

Admin (X-Admin-Key):
- GET|POST /api/admin/feature-pricing
- GET|PATCH|DELETE /api/admin/feature-pricing/{pricing_id}
- POST /api/admin/feature-pricing/{pricing_id}/restore
"""
from fastapi import APIRouter, Depends, Query

from access_engine.core.admin_auth import AdminActor, require_admin
from access_engine.features.pricing.service import (
    create_pricing,
    delete_pricing,
    find_active,
    get_pricing,
    get_public_pricing,
    list_featured,
    restore_pricing,
    update_pricing,
)
from access_engine.models.feature_pricing import PricingCreate, PricingUpdate


router = APIRouter(tags=["pricing"])
admin_router = APIRouter(prefix="/api/admin/feature-pricing", tags=["admin-pricing"])


@router.get("/api/feature-requests/pricing")
def public_pricing(featured: bool = Query(False)):
    """Catalog shown to requesters; ``featured=true`` returns only featured offers."""
    if featured:
        return {"success": True, "data": {"featured": [p.summary() for p in list_featured()]}}
    return {"success": True, "data": get_public_pricing()}


@admin_router.get("")
def list_pricing(
    include_inactive: bool = Query(True),
    include_deleted: bool = Query(False),
    admin: AdminActor = Depends(require_admin),
):
    items = find_active(include_inactive=include_inactive, include_deleted=include_deleted)
    return {"success": True, "data": [p.model_dump(mode="json") for p in items], "count": len(items)}


@admin_router.post("", status_code=201)
def create_pricing_offer(body: PricingCreate, admin: AdminActor = Depends(require_admin)):
    created = create_pricing(body, actor=admin)
    return {"success": True, "message": "Pricing created", "data": created.model_dump(mode="json")}


@admin_router.get("/{pricing_id}")
def get_pricing_offer(
    pricing_id: str,
    include_deleted: bool = Query(False),
    admin: AdminActor = Depends(require_admin),
):
    return {"success": True, "data": get_pricing(pricing_id, include_deleted=include_deleted).model_dump(mode="json")}


@admin_router.patch("/{pricing_id}")
def update_pricing_offer(pricing_id: str, body: PricingUpdate, admin: AdminActor = Depends(require_admin)):
    updated = update_pricing(pricing_id, body, actor=admin)
    return {"success": True, "message": "Pricing updated", "data": updated.model_dump(mode="json")}


@admin_router.delete("/{pricing_id}")
def delete_pricing_offer(pricing_id: str, admin: AdminActor = Depends(require_admin)):
    deleted = delete_pricing(pricing_id, actor=admin)
    return {"success": True, "message": "Pricing deleted", "data": deleted.model_dump(mode="json")}


@admin_router.post("/{pricing_id}/restore")
def restore_pricing_offer(pricing_id: str, admin: AdminActor = Depends(require_admin)):
    restored = restore_pricing(pricing_id, actor=admin)
    return {"success": True, "message": "Pricing restored", "data": restored.model_dump(mode="json")}
