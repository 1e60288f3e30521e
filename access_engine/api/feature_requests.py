"""
Feature request routes.

Public:
- POST /api/feature-requests: submit (201)
- POST /api/feature-requests/{request_id}/withdraw

Admin (X-Admin-Key):
- GET  /api/admin/feature-requests
- GET  /api/admin/feature-requests/pending-count
- GET  /api/admin/feature-requests/{request_id}
- POST /api/admin/feature-requests/{request_id}/approve
- POST /api/admin/feature-requests/{request_id}/reject
- POST /api/admin/feature-requests/{request_id}/resend-link
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from access_engine.core.admin_auth import AdminActor, require_admin
from access_engine.features.feature_access.service import list_access_for_request
from access_engine.features.feature_requests.service import (
    approve_request,
    get_request,
    list_requests,
    pending_count,
    reject_request,
    resend_payment_link,
    submit_request,
    withdraw_request,
)


router = APIRouter(prefix="/api/feature-requests", tags=["feature-requests"])
admin_router = APIRouter(prefix="/api/admin/feature-requests", tags=["admin-feature-requests"])


class SubmitRequest(BaseModel):
    phone: str
    name: str
    requested_features: Optional[List[str]] = None
    bundle_id: Optional[str] = None
    coupon_code: Optional[str] = Field(default=None, max_length=50)


class WithdrawRequest(BaseModel):
    phone: str


class ApproveRequest(BaseModel):
    duration_in_days: Optional[int] = Field(default=None, ge=0)
    approved_features: Optional[List[str]] = None
    payment_amount: Optional[float] = None
    coupon_code: Optional[str] = Field(default=None, max_length=50)
    admin_notes: Optional[str] = Field(default=None, max_length=1000)
    send_whatsapp: bool = True


class RejectRequest(BaseModel):
    rejection_reason: str
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


@router.post("", status_code=201)
def submit_feature_request(body: SubmitRequest):
    request = submit_request(
        body.phone,
        body.name,
        requested_features=body.requested_features,
        bundle_id=body.bundle_id,
        coupon_code=body.coupon_code,
    )
    return {
        "success": True,
        "message": "Feature request submitted. You will receive a payment link once it is approved.",
        "data": request.to_public(),
    }


@router.post("/{request_id}/withdraw")
def withdraw_feature_request(request_id: str, body: WithdrawRequest):
    return {"success": True, "message": "Request withdrawn", "data": withdraw_request(request_id, body.phone)}


@admin_router.get("")
def list_feature_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    feature_key: Optional[str] = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    admin: AdminActor = Depends(require_admin),
):
    result = list_requests(
        page=page,
        limit=limit,
        status=status,
        search=search,
        feature_key=feature_key,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {
        "success": True,
        "data": [r.to_public() for r in result["items"]],
        "pagination": result["pagination"],
    }


@admin_router.get("/pending-count")
def feature_requests_pending_count(admin: AdminActor = Depends(require_admin)):
    return {"success": True, "data": {"count": pending_count()}}


@admin_router.get("/{request_id}")
def get_feature_request(request_id: str, admin: AdminActor = Depends(require_admin)):
    request = get_request(request_id, include_deleted=True)
    data = request.to_public()
    data["access"] = [a.to_public() for a in list_access_for_request(request.id)]
    return {"success": True, "data": data}


@admin_router.post("/{request_id}/approve")
def approve_feature_request(request_id: str, body: ApproveRequest, admin: AdminActor = Depends(require_admin)):
    result = approve_request(
        request_id,
        duration_in_days=body.duration_in_days,
        approved_features=body.approved_features,
        payment_amount=body.payment_amount,
        coupon_code=body.coupon_code,
        admin_notes=body.admin_notes,
        actor=admin,
        send_notification=body.send_whatsapp,
    )
    return {
        "success": True,
        "message": "Request approved and payment link generated",
        "data": {
            "request": result.request.to_public(),
            "payment_url": result.payment_url,
            "notification_sent": result.notification_sent,
        },
    }


@admin_router.post("/{request_id}/reject")
def reject_feature_request(request_id: str, body: RejectRequest, admin: AdminActor = Depends(require_admin)):
    request = reject_request(request_id, body.rejection_reason, admin_notes=body.admin_notes, actor=admin)
    return {"success": True, "message": "Request rejected", "data": request.to_public()}


@admin_router.post("/{request_id}/resend-link")
def resend_feature_request_link(request_id: str, admin: AdminActor = Depends(require_admin)):
    request = resend_payment_link(request_id, actor=admin)
    return {"success": True, "message": "Payment link resent", "data": request.to_public()}
