"""
Payment routes.

- POST /api/payments/webhook: provider callback (signature checked by the provider)
- POST /api/admin/payments/confirm: operator confirms an order paid out of band
"""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from access_engine.core.admin_auth import AdminActor, require_admin
from access_engine.core.errors import ValidationError
from access_engine.features.audit.service import record_admin_action
from access_engine.features.feature_requests.service import confirm_payment
from access_engine.features.payments.provider import PaymentWebhookError
from access_engine.features.payments.service import process_payment_webhook

logger = logging.getLogger("access_engine.payments")

router = APIRouter(prefix="/api/payments", tags=["payments"])
admin_router = APIRouter(prefix="/api/admin/payments", tags=["admin-payments"])


class ConfirmPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=64)
    payment_id: str = Field(min_length=1, max_length=255)


@router.post("/webhook")
async def payment_webhook(request: Request):
    """
    Handle payment provider webhooks.

    Returns:
        {"received": true, "event_id": ..., "action": ...}

    Errors:
        400: invalid signature or payload
    """
    # raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    try:
        outcome = process_payment_webhook(headers, body)
    except PaymentWebhookError as e:
        logger.warning("[payments] rejected webhook", extra={"error_message": str(e)})
        raise ValidationError(f"Invalid webhook: {e}", code="invalid_webhook")
    return {"received": True, "event_id": outcome.event_id, "action": outcome.action}


@admin_router.post("/confirm")
def confirm_order_payment(body: ConfirmPaymentRequest, admin: AdminActor = Depends(require_admin)):
    confirmation = confirm_payment(body.order_id, body.payment_id)
    if not confirmation.already_processed:
        record_admin_action(
            action="payment.confirm",
            actor=admin,
            target_phone=confirmation.request.phone,
            target_resource=f"feature_request:{confirmation.request.id}",
            payload={"order_id": body.order_id, "payment_id": body.payment_id},
        )
    return {
        "success": True,
        "message": "Payment already processed" if confirmation.already_processed else "Payment confirmed",
        "data": {
            "request": confirmation.request.to_public(),
            "access": [a.to_public() for a in confirmation.access],
            "already_processed": confirmation.already_processed,
        },
    }
