"""
Operator routes over entitlement records.
Requires X-Admin-Key header for all endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_engine.core.admin_auth import AdminActor, require_admin
from access_engine.features.audit.service import record_admin_action
from access_engine.features.feature_access.service import (
    cancel_access,
    expire_lapsed_access,
    extend_access,
    find_expiring_soon,
    get_access,
    grant_access,
    list_access_by_phone,
    refund_access,
    restore_access,
    soft_delete_access,
)
from access_engine.models.common import utc_now
from access_engine.models.user_feature_access import AccessSource

logger = logging.getLogger("access_engine.admin_feature_access")

router = APIRouter(prefix="/api/admin/user-feature-access", tags=["admin-user-feature-access"])


class GrantRequest(BaseModel):
    phone: str
    feature_key: str
    duration_in_days: Optional[int] = Field(default=None, ge=0, description="None or 0 grants lifetime access")
    source: AccessSource = AccessSource.ADMIN_GRANT
    amount_paid: float = Field(default=0, ge=0)
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ExtendRequest(BaseModel):
    additional_days: int = Field(gt=0)


def _envelope(record, message: Optional[str] = None) -> dict:
    body = {"success": True, "data": record.to_public(utc_now())}
    if message:
        body["message"] = message
    return body


@router.get("")
def list_user_feature_access(
    phone: str = Query(..., min_length=10),
    include_deleted: bool = Query(False),
    admin: AdminActor = Depends(require_admin),
):
    now = utc_now()
    records = list_access_by_phone(phone, include_deleted=include_deleted)
    return {"success": True, "data": [r.to_public(now) for r in records], "count": len(records)}


@router.get("/expiring")
def list_expiring_access(
    days: Optional[int] = Query(None, ge=1, le=365),
    admin: AdminActor = Depends(require_admin),
):
    now = utc_now()
    records = find_expiring_soon(days=days, now=now)
    return {"success": True, "data": [r.to_public(now) for r in records], "count": len(records)}


@router.post("/expire")
def run_expiry_sweep(admin: AdminActor = Depends(require_admin)):
    result = expire_lapsed_access()
    record_admin_action(action="feature_access.expire_sweep", actor=admin, payload=result)
    logger.info("[admin] expiry sweep triggered", extra={"actor_id": admin.actor_id, "expired": result["expired"]})
    return {"success": True, "data": result}


@router.post("/grant", status_code=201)
def grant_user_feature_access(body: GrantRequest, admin: AdminActor = Depends(require_admin)):
    record = grant_access(
        body.phone,
        body.feature_key,
        duration_in_days=body.duration_in_days,
        source=body.source,
        amount_paid=body.amount_paid,
        admin_notes=body.admin_notes,
        actor=admin,
    )
    return _envelope(record, "Access granted")


@router.get("/{access_id}")
def get_user_feature_access(access_id: str, admin: AdminActor = Depends(require_admin)):
    return _envelope(get_access(access_id))


@router.post("/{access_id}/cancel")
def cancel_user_feature_access(access_id: str, body: Optional[ReasonRequest] = None, admin: AdminActor = Depends(require_admin)):
    return _envelope(cancel_access(access_id, actor=admin, reason=body.reason if body else None), "Access cancelled")


@router.post("/{access_id}/refund")
def refund_user_feature_access(access_id: str, body: Optional[ReasonRequest] = None, admin: AdminActor = Depends(require_admin)):
    return _envelope(refund_access(access_id, actor=admin, reason=body.reason if body else None), "Access refunded")


@router.post("/{access_id}/extend")
def extend_user_feature_access(access_id: str, body: ExtendRequest, admin: AdminActor = Depends(require_admin)):
    return _envelope(extend_access(access_id, body.additional_days, actor=admin), "Access extended")


@router.post("/{access_id}/restore")
def restore_user_feature_access(access_id: str, admin: AdminActor = Depends(require_admin)):
    return _envelope(restore_access(access_id, actor=admin), "Access restored")


@router.delete("/{access_id}")
def delete_user_feature_access(access_id: str, admin: AdminActor = Depends(require_admin)):
    return _envelope(soft_delete_access(access_id, actor=admin), "Access deleted")
