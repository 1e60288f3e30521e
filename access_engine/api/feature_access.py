"""
Access check and feature gate routes.

- POST /api/feature-access/check: resolve (phone, feature) now
- GET|PUT /api/admin/feature-access: list gates / upsert one gate (X-Admin-Key)
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from access_engine.core.admin_auth import AdminActor, require_admin
from access_engine.features.entitlements.service import resolve_access
from access_engine.features.feature_access.service import list_feature_gates, upsert_feature_gate


router = APIRouter(prefix="/api/feature-access", tags=["feature-access"])
admin_router = APIRouter(prefix="/api/admin/feature-access", tags=["admin-feature-access"])


class AccessCheckRequest(BaseModel):
    phone: str
    feature_key: str


class FeatureGateUpdate(BaseModel):
    feature_key: str
    feature_name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    requires_membership: Optional[bool] = None
    is_active: Optional[bool] = None


@router.post("/check")
def check_feature_access(body: AccessCheckRequest):
    decision = resolve_access(body.phone, body.feature_key)
    return {"success": True, "data": decision.to_dict()}


@admin_router.get("")
def list_gates(admin: AdminActor = Depends(require_admin)):
    return {"success": True, "data": [g.model_dump(mode="json") for g in list_feature_gates()]}


@admin_router.put("")
def update_gate(body: FeatureGateUpdate, admin: AdminActor = Depends(require_admin)):
    gate = upsert_feature_gate(
        body.feature_key,
        feature_name=body.feature_name,
        description=body.description,
        requires_membership=body.requires_membership,
        is_active=body.is_active,
        actor=admin,
    )
    return {"success": True, "message": "Feature gate updated", "data": gate.model_dump(mode="json")}
